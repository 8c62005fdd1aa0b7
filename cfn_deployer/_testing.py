"""_testing.py — Shared fixtures for the test modules.

``AwsTestCase`` starts a moto backend (DynamoDB, SSM, SQS) per test with the
four tables provisioned. ``FakeCloudFormation`` stands in for the StackSet
API, which moto does not model closely enough for operation polling: each
(account, region) pair can be scripted to succeed, fail, or run forever, and
issue/poll calls can be made to raise.
"""
from __future__ import annotations

import itertools
import os
import threading
import unittest
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

from botocore.exceptions import ClientError
from moto import mock_aws

from cfn_deployer import aws_clients, config, parameters, persistence

T0 = 1_700_000_000

DEFAULT_TEST_PARAMETERS = {
    "base": {"InstanceType": "t3.micro", "LogLevel": "INFO"},
    "dev": {"InstanceType": "t3.small"},
}


def client_error(code: str, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class AwsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        env = patch.dict(
            os.environ,
            {
                "AWS_ACCESS_KEY_ID": "testing",
                "AWS_SECRET_ACCESS_KEY": "testing",
                "AWS_SECURITY_TOKEN": "testing",
                "AWS_SESSION_TOKEN": "testing",
                "AWS_DEFAULT_REGION": config.DEPLOY_REGION,
            },
        )
        env.start()
        self.addCleanup(env.stop)

        backend = mock_aws()
        backend.start()
        self.addCleanup(backend.stop)

        aws_clients._reset_clients()
        self.addCleanup(aws_clients._reset_clients)
        parameters.clear_cache()
        self.addCleanup(parameters.clear_cache)

        for name, value in (
            ("DISABLE_PARAMETER_STORE", True),
            ("DEFAULT_PARAMETERS", DEFAULT_TEST_PARAMETERS),
        ):
            patcher = patch.object(config, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)

        persistence.create_tables()


class _Paginator:
    def __init__(self, fn):
        self._fn = fn

    def paginate(self, **kwargs):
        yield self._fn(**kwargs)


class FakeCloudFormation:
    """In-memory StackSet API. Operations finish after ``polls_to_finish`` describes."""

    def __init__(self, polls_to_finish: int = 1):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.polls_to_finish = polls_to_finish
        self.stack_sets: Dict[str, Dict[str, Any]] = {}
        self.instances: set = set()
        self.operations: Dict[str, Dict[str, Any]] = {}
        # (account, region) -> final CloudFormation status ("SUCCEEDED" / "FAILED" / "RUNNING")
        self.outcomes: Dict[Tuple[str, str], str] = {}
        self.issue_errors: Dict[Tuple[str, str], List[Exception]] = {}
        self.poll_errors: Dict[Tuple[str, str], List[Exception]] = {}
        self.create_errors: List[Exception] = []
        # Pairs whose next issue registers the operation but loses the response.
        self.lose_response: set = set()
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []

    # -- helpers --------------------------------------------------------------

    def add_instance(self, name: str, account: str, region: str) -> None:
        self.stack_sets.setdefault(name, {"StackSetName": name})
        self.instances.add((name, account, region))

    def issued(self, account: str, region: str) -> List[str]:
        return [c[0] for c in self.calls if c[1:] == (account, region) and c[0] in ("create", "update")]

    def polls(self) -> int:
        return sum(1 for c in self.calls if c[0] == "describe_operation")

    # -- StackSet API -----------------------------------------------------------

    def describe_stack_set(self, StackSetName: str) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("describe_stack_set", None, None))
            if StackSetName not in self.stack_sets:
                raise client_error("StackSetNotFoundException", "DescribeStackSet")
            return {"StackSet": dict(self.stack_sets[StackSetName])}

    def create_stack_set(self, **kwargs: Any) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("create_stack_set", None, None))
            if self.create_errors:
                raise self.create_errors.pop(0)
            name = kwargs["StackSetName"]
            if name in self.stack_sets:
                raise client_error("NameAlreadyExistsException", "CreateStackSet")
            self.stack_sets[name] = dict(kwargs)
            return {"StackSetId": f"{name}:{next(self._ids)}"}

    def get_paginator(self, name: str) -> _Paginator:
        assert name == "list_stack_instances", name

        def _list(StackSetName: str, **_: Any) -> Dict[str, Any]:
            with self._lock:
                return {
                    "Summaries": [
                        {"Account": account, "Region": region}
                        for (ss, account, region) in sorted(self.instances)
                        if ss == StackSetName
                    ]
                }

        return _Paginator(_list)

    def create_stack_instances(self, **kwargs: Any) -> Dict[str, Any]:
        return self._issue("create", kwargs)

    def update_stack_set(self, **kwargs: Any) -> Dict[str, Any]:
        return self._issue("update", kwargs)

    def _issue(self, action: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        pair = (kwargs["Accounts"][0], kwargs["Regions"][0])
        op_id = kwargs["OperationId"]
        with self._lock:
            self.calls.append((action, pair[0], pair[1]))
            errors = self.issue_errors.get(pair)
            if errors:
                raise errors.pop(0)
            if op_id in self.operations:
                raise client_error("OperationIdAlreadyExistsException", "CreateStackInstances")
            self.operations[op_id] = {
                "name": kwargs["StackSetName"],
                "pair": pair,
                "action": action,
                "polls": 0,
                "kwargs": dict(kwargs),
            }
            if pair in self.lose_response:
                self.lose_response.discard(pair)
                raise client_error("ServiceUnavailable", "CreateStackInstances")
            return {"OperationId": op_id}

    def describe_stack_set_operation(self, StackSetName: str, OperationId: str) -> Dict[str, Any]:
        with self._lock:
            op = self.operations.get(OperationId)
            pair = op["pair"] if op else (None, None)
            self.calls.append(("describe_operation", pair[0], pair[1]))
            errors = self.poll_errors.get(pair)
            if errors:
                raise errors.pop(0)
            if not op:
                raise client_error("OperationNotFoundException", "DescribeStackSetOperation")
            op["polls"] += 1
            final = self.outcomes.get(pair, "SUCCEEDED")
            status = "RUNNING" if final == "RUNNING" or op["polls"] < self.polls_to_finish else final
            if status == "SUCCEEDED":
                self.instances.add((op["name"], pair[0], pair[1]))
            return {"StackSetOperation": {"OperationId": OperationId, "Status": status}}

    def list_stack_set_operation_results(self, StackSetName: str, OperationId: str) -> Dict[str, Any]:
        with self._lock:
            op = self.operations[OperationId]
            account, region = op["pair"]
            return {
                "Summaries": [
                    {
                        "Account": account,
                        "Region": region,
                        "Status": "FAILED",
                        "StatusReason": "Resource creation failed: Bucket already exists",
                    }
                ]
            }
