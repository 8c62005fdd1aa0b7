"""Parameter resolution tests (offline defaults and SSM Parameter Store)."""

from __future__ import annotations

import unittest
from unittest.mock import patch

from cfn_deployer import config, parameters
from cfn_deployer._testing import AwsTestCase
from cfn_deployer.aws_clients import _get_ssm
from cfn_deployer.config import PARAMETER_STORE_PREFIX
from cfn_deployer.errors import MalformedBuild

BUILD = {
    "repository": "web",
    "environment": "dev",
    "version": "5.abc123",
    "artifact_ref": "s3://artifacts-bucket/artifacts/web/dev/5.abc123",
}


class ArtifactRefTests(unittest.TestCase):
    def test_split_artifact_ref(self) -> None:
        self.assertEqual(
            parameters.split_artifact_ref("s3://artifacts-bucket/artifacts/web/dev/5.abc123/"),
            ("artifacts-bucket", "artifacts/web/dev/5.abc123"),
        )

    def test_split_artifact_ref_rejects_bad_refs(self) -> None:
        for ref in ("", "https://bucket/prefix", "s3://bucket", "s3:///prefix", "s3://bucket/"):
            with self.assertRaises(MalformedBuild, msg=ref):
                parameters.split_artifact_ref(ref)

    def test_to_cloudformation_is_sorted(self) -> None:
        self.assertEqual(
            parameters.to_cloudformation({"Version": "5.abc123", "Env": "dev"}),
            [
                {"ParameterKey": "Env", "ParameterValue": "dev"},
                {"ParameterKey": "Version", "ParameterValue": "5.abc123"},
            ],
        )


class OfflineParameterTests(AwsTestCase):
    def test_merges_base_environment_and_build_values(self) -> None:
        resolved = parameters.resolve_parameters("dev", BUILD)
        self.assertEqual(
            resolved,
            {
                "InstanceType": "t3.small",
                "LogLevel": "INFO",
                "Env": "dev",
                "Version": "5.abc123",
                "ArtifactBucket": "artifacts-bucket",
                "ArtifactPrefix": "artifacts/web/dev/5.abc123",
            },
        )

    def test_build_values_win_over_stored_sets(self) -> None:
        with patch.object(config, "DEFAULT_PARAMETERS", {"base": {"Version": "0.stale", "Env": "other"}}):
            resolved = parameters.resolve_parameters("staging", dict(BUILD, environment="staging"))
        self.assertEqual(resolved["Version"], "5.abc123")
        self.assertEqual(resolved["Env"], "staging")

    def test_unknown_environment_uses_base_only(self) -> None:
        resolved = parameters.resolve_parameters("qa", BUILD)
        self.assertEqual(resolved["InstanceType"], "t3.micro")


class ParameterStoreTests(AwsTestCase):
    def setUp(self) -> None:
        super().setUp()
        patcher = patch.object(config, "DISABLE_PARAMETER_STORE", False)
        patcher.start()
        self.addCleanup(patcher.stop)
        self._put("base/InstanceType", "t3.micro")
        self._put("base/LogLevel", "INFO")
        self._put("dev/InstanceType", "t3.large")
        self._put("dev/DbPassword", "s3cret", secure=True)

    def _put(self, name: str, value: str, *, secure: bool = False) -> None:
        _get_ssm().put_parameter(
            Name=f"{PARAMETER_STORE_PREFIX}/{name}",
            Value=value,
            Type="SecureString" if secure else "String",
            Overwrite=True,
        )

    def test_reads_sets_from_parameter_store(self) -> None:
        resolved = parameters.resolve_parameters("dev", BUILD)
        self.assertEqual(resolved["InstanceType"], "t3.large")
        self.assertEqual(resolved["LogLevel"], "INFO")
        self.assertEqual(resolved["DbPassword"], "s3cret")
        self.assertEqual(resolved["Env"], "dev")

    def test_sets_are_cached_until_cleared(self) -> None:
        parameters.resolve_parameters("dev", BUILD)
        self._put("dev/InstanceType", "t3.xlarge")
        self.assertEqual(parameters.resolve_parameters("dev", BUILD)["InstanceType"], "t3.large")

        parameters.clear_cache()
        self.assertEqual(parameters.resolve_parameters("dev", BUILD)["InstanceType"], "t3.xlarge")


if __name__ == "__main__":
    unittest.main()
