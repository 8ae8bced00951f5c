"""Application load balancer, target groups, listeners and listener rules."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..base import ObservedResource
from .base import ResourceHandler, is_not_found, platform_call


def _actions(action: Dict[str, Any]) -> List[Dict[str, Any]]:
    if action.get("type", "forward") == "fixed-response":
        response = action.get("fixed_response", {})
        return [
            {
                "Type": "fixed-response",
                "FixedResponseConfig": {
                    "StatusCode": str(response.get("status_code", "404")),
                    "ContentType": response.get("content_type", "text/plain"),
                    "MessageBody": response.get("message_body", ""),
                },
            }
        ]
    return [{"Type": "forward", "TargetGroupArn": action["target_group_arn"]}]


class LoadBalancerHandler(ResourceHandler):
    """``aws_lb``; physical id is the load balancer ARN."""

    resource_type = "aws_lb"
    service = "elbv2"

    def _observed(self, lb: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=lb["LoadBalancerArn"],
            outputs={
                "id": lb["LoadBalancerArn"],
                "arn": lb["LoadBalancerArn"],
                "dns_name": lb["DNSName"],
                "zone_id": lb.get("CanonicalHostedZoneId"),
            },
            inputs={
                "name": lb["LoadBalancerName"],
                "internal": lb.get("Scheme") == "internal",
                "load_balancer_type": lb.get("Type", "application"),
            },
        )

    def _describe(self, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            lbs = self._client().describe_load_balancers(**kwargs)["LoadBalancers"]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return lbs[0] if lbs else None

    def _set_idle_timeout(self, arn: str, inputs: Dict[str, Any]):
        if inputs.get("idle_timeout") is not None:
            self._client().modify_load_balancer_attributes(
                LoadBalancerArn=arn,
                Attributes=[
                    {"Key": "idle_timeout.timeout_seconds", "Value": str(inputs["idle_timeout"])}
                ],
            )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        client = self._client()
        params: Dict[str, Any] = {
            "Name": inputs["name"],
            "Subnets": list(inputs["subnets"]),
            "Scheme": "internal" if inputs.get("internal") else "internet-facing",
            "Type": inputs.get("load_balancer_type", "application"),
        }
        if inputs.get("security_groups"):
            params["SecurityGroups"] = list(inputs["security_groups"])
        if inputs.get("tags"):
            params["Tags"] = self._tag_list(inputs["tags"])
        with platform_call(self._op("create")):
            lb = client.create_load_balancer(**params)["LoadBalancers"][0]
            self._set_idle_timeout(lb["LoadBalancerArn"], inputs)
        return self._observed(lb)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            lb = self._describe(LoadBalancerArns=[physical_id])
        return self._observed(lb) if lb else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("security_groups") != new_inputs.get("security_groups"):
                client.set_security_groups(
                    LoadBalancerArn=physical_id, SecurityGroups=list(new_inputs["security_groups"])
                )
            if old_inputs.get("subnets") != new_inputs.get("subnets"):
                client.set_subnets(LoadBalancerArn=physical_id, Subnets=list(new_inputs["subnets"]))
            if old_inputs.get("idle_timeout") != new_inputs.get("idle_timeout"):
                self._set_idle_timeout(physical_id, new_inputs)
            lb = self._describe(LoadBalancerArns=[physical_id])
        return self._observed(lb)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_load_balancer(LoadBalancerArn=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            lb = self._describe(Names=[inputs["name"]])
        return self._observed(lb) if lb else None


class TargetGroupHandler(ResourceHandler):
    """``aws_lb_target_group`` with an HTTP health check."""

    resource_type = "aws_lb_target_group"
    service = "elbv2"

    @staticmethod
    def _health_check(inputs: Dict[str, Any]) -> Dict[str, Any]:
        check = inputs.get("health_check") or {}
        params: Dict[str, Any] = {}
        if "path" in check:
            params["HealthCheckPath"] = check["path"]
        if "matcher" in check:
            params["Matcher"] = {"HttpCode": str(check["matcher"])}
        for attribute, key in (
            ("interval", "HealthCheckIntervalSeconds"),
            ("timeout", "HealthCheckTimeoutSeconds"),
            ("healthy_threshold", "HealthyThresholdCount"),
            ("unhealthy_threshold", "UnhealthyThresholdCount"),
        ):
            if attribute in check:
                params[key] = int(check[attribute])
        return params

    def _observed(self, group: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=group["TargetGroupArn"],
            outputs={"id": group["TargetGroupArn"], "arn": group["TargetGroupArn"]},
            inputs={
                "name": group["TargetGroupName"],
                "port": group.get("Port"),
                "protocol": group.get("Protocol"),
                "vpc_id": group.get("VpcId"),
            },
        )

    def _describe(self, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            groups = self._client().describe_target_groups(**kwargs)["TargetGroups"]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return groups[0] if groups else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params: Dict[str, Any] = {
            "Name": inputs["name"],
            "Protocol": inputs.get("protocol", "HTTP"),
            "Port": int(inputs["port"]),
            "VpcId": inputs["vpc_id"],
            "TargetType": inputs.get("target_type", "instance"),
            **self._health_check(inputs),
        }
        if inputs.get("tags"):
            params["Tags"] = self._tag_list(inputs["tags"])
        with platform_call(self._op("create")):
            group = self._client().create_target_group(**params)["TargetGroups"][0]
        return self._observed(group)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            group = self._describe(TargetGroupArns=[physical_id])
        return self._observed(group) if group else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        with platform_call(self._op("update")):
            group = self._client().modify_target_group(
                TargetGroupArn=physical_id, **self._health_check(new_inputs)
            )["TargetGroups"][0]
        return self._observed(group)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_target_group(TargetGroupArn=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            group = self._describe(Names=[inputs["name"]])
        return self._observed(group) if group else None


class ListenerHandler(ResourceHandler):
    """``aws_lb_listener``; found again by load balancer and port."""

    resource_type = "aws_lb_listener"
    service = "elbv2"

    def _observed(self, listener: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=listener["ListenerArn"],
            outputs={"id": listener["ListenerArn"], "arn": listener["ListenerArn"]},
            inputs={
                "load_balancer_arn": listener["LoadBalancerArn"],
                "port": listener.get("Port"),
                "protocol": listener.get("Protocol"),
            },
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        with platform_call(self._op("create")):
            listener = self._client().create_listener(
                LoadBalancerArn=inputs["load_balancer_arn"],
                Protocol=inputs.get("protocol", "HTTP"),
                Port=int(inputs["port"]),
                DefaultActions=_actions(inputs["default_action"]),
            )["Listeners"][0]
        return self._observed(listener)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                listeners = self._client().describe_listeners(ListenerArns=[physical_id])[
                    "Listeners"
                ]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(listeners[0]) if listeners else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        with platform_call(self._op("update")):
            listener = self._client().modify_listener(
                ListenerArn=physical_id,
                Protocol=new_inputs.get("protocol", "HTTP"),
                Port=int(new_inputs["port"]),
                DefaultActions=_actions(new_inputs["default_action"]),
            )["Listeners"][0]
        return self._observed(listener)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_listener(ListenerArn=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            try:
                listeners = self._client().describe_listeners(
                    LoadBalancerArn=inputs["load_balancer_arn"]
                )["Listeners"]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        for listener in listeners:
            if listener.get("Port") == int(inputs["port"]):
                return self._observed(listener)
        return None


class ListenerRuleHandler(ResourceHandler):
    """``aws_lb_listener_rule`` matching path patterns; found again by priority."""

    resource_type = "aws_lb_listener_rule"
    service = "elbv2"

    @staticmethod
    def _conditions(inputs: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {"Field": "path-pattern", "PathPatternConfig": {"Values": list(inputs["path_patterns"])}}
        ]

    def _observed(self, rule: Dict[str, Any], listener_arn: Optional[str]) -> ObservedResource:
        priority = rule.get("Priority")
        return ObservedResource(
            physical_id=rule["RuleArn"],
            outputs={"id": rule["RuleArn"], "arn": rule["RuleArn"]},
            inputs={
                "listener_arn": listener_arn,
                "priority": int(priority) if priority and priority.isdigit() else priority,
            },
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        with platform_call(self._op("create")):
            rule = self._client().create_rule(
                ListenerArn=inputs["listener_arn"],
                Priority=int(inputs["priority"]),
                Conditions=self._conditions(inputs),
                Actions=_actions(inputs["action"]),
            )["Rules"][0]
        return self._observed(rule, inputs["listener_arn"])

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                rules = self._client().describe_rules(RuleArns=[physical_id])["Rules"]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(rules[0], inputs.get("listener_arn")) if rules else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("priority") != new_inputs.get("priority"):
                client.set_rule_priorities(
                    RulePriorities=[
                        {"RuleArn": physical_id, "Priority": int(new_inputs["priority"])}
                    ]
                )
            rule = client.modify_rule(
                RuleArn=physical_id,
                Conditions=self._conditions(new_inputs),
                Actions=_actions(new_inputs["action"]),
            )["Rules"][0]
        return self._observed(rule, new_inputs["listener_arn"])

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_rule(RuleArn=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            try:
                rules = self._client().describe_rules(ListenerArn=inputs["listener_arn"])["Rules"]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        for rule in rules:
            if rule.get("Priority") == str(inputs["priority"]):
                return self._observed(rule, inputs["listener_arn"])
        return None
