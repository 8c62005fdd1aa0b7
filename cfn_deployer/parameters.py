"""parameters.py — Deployment parameter sets for a build.

Resolution order (later wins on key collision):

1. the base set, ``<PARAMETER_STORE_PREFIX>/base/*``
2. the environment override set, ``<PARAMETER_STORE_PREFIX>/<environment>/*``
3. the build-derived values ``Env``, ``Version``, ``ArtifactBucket``, ``ArtifactPrefix``

Sets 1 and 2 come from SSM Parameter Store unless ``DISABLE_PARAMETER_STORE``
is on, in which case ``DEFAULT_PARAMETERS_JSON`` supplies them (offline runs
and tests).
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from cfn_deployer.aws_clients import _get_ssm
from cfn_deployer import config
from cfn_deployer.config import PARAMETER_CACHE_TTL_SECONDS, PARAMETER_STORE_PREFIX, logger
from cfn_deployer.errors import MalformedBuild, TransientAwsError, _is_transient

__all__ = [
    "clear_cache",
    "resolve_parameters",
    "split_artifact_ref",
    "to_cloudformation",
]

_set_cache: Dict[str, Dict[str, str]] = {}
_set_cache_at: Dict[str, float] = {}


def clear_cache() -> None:
    _set_cache.clear()
    _set_cache_at.clear()


def split_artifact_ref(artifact_ref: str) -> Tuple[str, str]:
    """``s3://bucket/some/prefix`` -> (``bucket``, ``some/prefix``)."""
    ref = str(artifact_ref or "")
    if not ref.startswith("s3://"):
        raise MalformedBuild(f"artifact_ref must be an s3:// URI, got '{ref}'")
    bucket, _, prefix = ref[len("s3://"):].partition("/")
    prefix = prefix.strip("/")
    if not bucket or not prefix:
        raise MalformedBuild(f"artifact_ref '{ref}' must name a bucket and a prefix")
    return bucket, prefix


def _fetch_set(name: str) -> Dict[str, str]:
    path = f"{PARAMETER_STORE_PREFIX.rstrip('/')}/{name}"
    values: Dict[str, str] = {}
    try:
        paginator = _get_ssm().get_paginator("get_parameters_by_path")
        for page in paginator.paginate(Path=path, Recursive=False, WithDecryption=True):
            for param in page.get("Parameters", []):
                values[param["Name"].rsplit("/", 1)[-1]] = str(param.get("Value", ""))
    except (BotoCoreError, ClientError) as exc:
        if _is_transient(exc):
            raise TransientAwsError(f"Parameter Store read of {path} failed: {exc}") from exc
        raise
    logger.info("[INFO] Loaded %d parameter(s) from %s", len(values), path)
    return values


def _parameter_set(name: str) -> Dict[str, str]:
    if config.DISABLE_PARAMETER_STORE:
        return {k: str(v) for k, v in (config.DEFAULT_PARAMETERS.get(name) or {}).items()}

    now = time.time()
    if name in _set_cache and (now - _set_cache_at.get(name, 0.0)) < PARAMETER_CACHE_TTL_SECONDS:
        return dict(_set_cache[name])
    values = _fetch_set(name)
    _set_cache[name] = values
    _set_cache_at[name] = now
    return dict(values)


def resolve_parameters(environment: str, build: Dict[str, Any]) -> Dict[str, str]:
    bucket, prefix = split_artifact_ref(build.get("artifact_ref", ""))
    merged: Dict[str, str] = {}
    merged.update(_parameter_set("base"))
    merged.update(_parameter_set(environment))
    merged.update(
        {
            "Env": environment,
            "Version": str(build["version"]),
            "ArtifactBucket": bucket,
            "ArtifactPrefix": prefix,
        }
    )
    return merged


def to_cloudformation(params: Dict[str, str]) -> List[Dict[str, str]]:
    return [
        {"ParameterKey": key, "ParameterValue": str(value)}
        for key, value in sorted(params.items())
    ]
