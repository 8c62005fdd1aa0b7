"""aws_clients.py — Lazy-singleton AWS service clients.

Clients are created on first call and cached for subsequent invocations so a
warm Lambda container reuses them. ``_reset_clients`` drops the cache (tests
start a fresh moto backend per case).
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from cfn_deployer.config import DEPLOY_REGION

__all__ = [
    "_get_cloudformation",
    "_get_ddb",
    "_get_sqs",
    "_get_ssm",
    "_reset_clients",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

# botocore standard-mode max_attempts per service.
_MAX_ATTEMPTS = {"dynamodb": 5, "cloudformation": 5, "ssm": 5, "sqs": 3}

_clients: Dict[str, Any] = {}


def _client(service: str, region: Optional[str] = None):
    client = _clients.get(service)
    if client is None:
        client = boto3.client(
            service,
            region_name=region or DEPLOY_REGION,
            config=Config(retries={"max_attempts": _MAX_ATTEMPTS.get(service, 5), "mode": "standard"}),
        )
        _clients[service] = client
    return client


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    return _client("dynamodb", region)


def _get_cloudformation(region: Optional[str] = None):
    """The CloudFormation client for the StackSet administration region."""
    return _client("cloudformation", region)


def _get_sqs(region: Optional[str] = None):
    return _client("sqs", region)


def _get_ssm(region: Optional[str] = None):
    return _client("ssm", region)


def _reset_clients() -> None:
    _clients.clear()
