"""Shared test fixtures for stackforge."""

import pytest

from stackforge.config import (
    ExecutionConfig,
    RetryConfig,
    StackforgeConfig,
    StateConfig,
    reset_config,
    set_config,
)
from stackforge.engine import StackRunner
from stackforge.expressions import Format
from stackforge.logging import clear_sensitive
from stackforge.platform.memory import InMemoryPlatform
from stackforge.stack import Stack
from stackforge.stacks.ollama_webui import build_stack
from stackforge.state import StateStore

SECRET = "s3cr3t-webui-key"


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch, tmp_path):
    """Fresh config with instant retries and a per-test state file."""
    for name in ("MAX_PARALLELISM", "OVERWRITE_DRIFT", "STATE_FILE", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    clear_sensitive()
    set_config(make_config(tmp_path))
    yield
    reset_config()
    clear_sensitive()


def make_config(tmp_path, **execution) -> StackforgeConfig:
    """Config with zero backoff so retry tests run instantly."""
    return StackforgeConfig(
        execution=ExecutionConfig(**execution),
        retry=RetryConfig(max_attempts=3, backoff_multiplier=0, backoff_min=0, backoff_max=0),
        state=StateConfig(state_file=str(tmp_path / "state.json")),
    )


def chain_stack(name: str = "demo", retention: int = 7, log_group: bool = True) -> Stack:
    """role <- instance profile, plus an independent log group."""
    stack = Stack("chain")
    prefix = stack.variable("prefix", default=name)
    role = stack.resource(
        "aws_iam_role",
        "app",
        {"name": Format("{}-role", prefix), "assume_role_policy": "{}"},
    )
    profile = stack.resource(
        "aws_iam_instance_profile",
        "app",
        {"name": Format("{}-profile", prefix), "role": role.id},
    )
    if log_group:
        stack.resource(
            "aws_cloudwatch_log_group",
            "app",
            {"name": "/app", "retention_in_days": retention},
        )
    stack.output("profile_arn", profile.arn)
    return stack


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def config_factory(tmp_path):
    """Build a fast config with execution overrides, e.g. ``max_parallelism=1``."""
    return lambda **execution: make_config(tmp_path, **execution)


@pytest.fixture
def make_chain():
    return chain_stack


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def platform():
    """Simulated account: vpc-123 with public and private subnets in three zones."""
    return InMemoryPlatform.with_demo_network()


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.json"))


@pytest.fixture
def variables():
    return {"vpc_id": "vpc-123", "webui_secret_key": SECRET}


@pytest.fixture
def ollama_stack():
    return build_stack()


@pytest.fixture
def ollama_runner(ollama_stack, platform, tmp_path, config):
    return StackRunner(
        ollama_stack, platform=platform, state_file=str(tmp_path / "state.json"), config=config
    )


@pytest.fixture
def chain_runner(platform, tmp_path, config):
    return StackRunner(
        chain_stack(), platform=platform, state_file=str(tmp_path / "state.json"), config=config
    )
