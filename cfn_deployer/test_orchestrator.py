"""End-to-end orchestrator tests on the inline scheduler and a virtual clock.

Each test drives real DynamoDB-backed state (moto) and a scripted
CloudFormation client through ``dispatch.run_inline``.
"""

from __future__ import annotations

import unittest
from unittest.mock import patch

from cfn_deployer import dispatch, fanout, intake, lifecycle, locks, orchestrator, persistence, promotion, registry
from cfn_deployer._testing import T0, AwsTestCase, FakeCloudFormation, client_error
from cfn_deployer.dispatch import InlineScheduler, VirtualClock
from cfn_deployer.errors import TransientAwsError

DEV_ACCOUNT = "111111111111"
STAGING_ACCOUNT = "222222222222"


def _entered(attempt: dict, phase: str) -> int:
    return next(h["epoch"] for h in attempt["phase_history"] if h["to"] == phase)


class OrchestratorTestCase(AwsTestCase):
    polls_to_finish = 1

    def setUp(self) -> None:
        super().setUp()
        self.fake = FakeCloudFormation(polls_to_finish=self.polls_to_finish)
        patcher = patch.object(fanout, "_get_cloudformation", return_value=self.fake)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.clock = VirtualClock(T0)
        self.scheduler = InlineScheduler(self.clock)

    def submit(self, environment: str, version: str, repository: str = "web") -> str:
        now = self.clock.now()
        build = intake.new_build(
            repository,
            environment,
            version,
            f"s3://artifacts-bucket/artifacts/{repository}/{environment}/{version}",
            now=now,
        )
        intake.record_build(build)
        return intake.submit(
            build, idempotency_key=intake.build_idempotency_key(build), scheduler=self.scheduler, now=now
        )

    def drain(self, max_steps: int = 1000) -> int:
        return dispatch.run_inline(self.scheduler, max_steps=max_steps)


class PromotionFlowTests(OrchestratorTestCase):
    def setUp(self) -> None:
        super().setUp()
        registry.set_target("dev", accounts=[DEV_ACCOUNT], regions=["us-east-1"], downstream_environment="staging")
        registry.set_target("staging", accounts=[STAGING_ACCOUNT], regions=["us-east-1"])

    def test_dev_success_promotes_exactly_one_staging_build(self) -> None:
        run_id = self.submit("dev", "5.abc123")
        self.drain()

        dev = persistence.get_attempt(run_id)
        self.assertEqual(dev["phase"], "completed")
        self.assertEqual(dev["outcome"], "succeeded")
        self.assertEqual(
            [h["to"] for h in dev["phase_history"]],
            ["locking", "deploying", "verifying", "promoting", "completed"],
        )
        self.assertEqual(dev["promotion"]["status"], "submitted")
        self.assertEqual(locks.describe("dev#dev")["status"], locks.STATUS_RELEASED)

        staging_builds = persistence.list_builds("web", "staging")
        self.assertEqual(len(staging_builds), 1)
        self.assertEqual(staging_builds[0]["version"], "5.abc123")
        self.assertEqual(staging_builds[0]["promoted_from"], run_id)

        staging = persistence.get_attempt(dev["promotion"]["downstream_run_id"])
        self.assertEqual(staging["phase"], "completed")
        self.assertEqual(staging["outcome"], "succeeded")
        self.assertNotIn("promotion", staging)
        self.assertEqual(self.fake.issued(STAGING_ACCOUNT, "us-east-1"), ["create"])
        self.assertEqual(sorted(self.fake.stack_sets), ["web-dev", "web-staging"])

        # Re-delivery of the finished attempt and a repeated promote are both no-ops.
        orchestrator.advance(run_id, now=self.clock.now() + 5, scheduler=self.scheduler)
        self.assertEqual(promotion.promote(dev, now=self.clock.now(), scheduler=self.scheduler)["status"], "duplicate")
        self.drain()
        self.assertEqual(len(persistence.list_builds("web", "staging")), 1)
        self.assertEqual(len(persistence.list_attempts("staging#staging")), 1)

    def test_parameters_carry_version_and_environment(self) -> None:
        run_id = self.submit("dev", "5.abc123")
        self.drain()
        params = persistence.get_attempt(run_id)["parameters"]
        self.assertEqual(params["Env"], "dev")
        self.assertEqual(params["Version"], "5.abc123")
        self.assertEqual(params["InstanceType"], "t3.small")
        self.assertEqual(params["ArtifactPrefix"], "artifacts/web/dev/5.abc123")

    def test_failed_operation_fails_attempt_without_promotion(self) -> None:
        self.fake.outcomes[(DEV_ACCOUNT, "us-east-1")] = "FAILED"
        run_id = self.submit("dev", "5.abc123")
        self.drain()

        dev = persistence.get_attempt(run_id)
        self.assertEqual(dev["phase"], "failed")
        self.assertEqual(dev["reason"], "OperationFailed")
        self.assertEqual(dev["outcome"], "failed")
        self.assertEqual(len(dev["failed_pairs"]), 1)
        self.assertIn("Resource creation failed", dev["failed_pairs"][0]["error"])
        self.assertNotIn("promotion", dev)
        self.assertEqual(persistence.list_builds("web", "staging"), [])
        self.assertEqual(locks.describe("dev#dev")["status"], locks.STATUS_RELEASED)

    def test_missing_downstream_target_still_completes_source(self) -> None:
        registry.set_target("dev", accounts=[DEV_ACCOUNT], regions=["us-east-1"], downstream_environment="prd")
        run_id = self.submit("dev", "5.abc123")
        self.drain()

        dev = persistence.get_attempt(run_id)
        self.assertEqual(dev["phase"], "completed")
        self.assertEqual(dev["outcome"], "succeeded")
        self.assertIn("prd", dev["promotion_error"])
        self.assertEqual(dev["promotion"]["status"], "failed")


class LockContentionTests(OrchestratorTestCase):
    polls_to_finish = 3

    def setUp(self) -> None:
        super().setUp()
        registry.set_target("dev", accounts=[DEV_ACCOUNT], regions=["us-east-1"])

    def test_second_build_waits_for_first_and_then_deploys(self) -> None:
        first = self.submit("dev", "5.aaa111")
        self.clock.tick(1)
        second = self.submit("dev", "6.bbb222")
        self.drain()

        a = persistence.get_attempt(first)
        b = persistence.get_attempt(second)
        self.assertEqual((a["outcome"], b["outcome"]), ("succeeded", "succeeded"))
        self.assertGreaterEqual(b["lock_attempts"], 1)
        self.assertNotIn("lock_wait", b)

        # B only entered deploying once A had finished.
        self.assertGreaterEqual(_entered(b, "deploying"), a["completed_epoch"])
        self.assertEqual(self.fake.issued(DEV_ACCOUNT, "us-east-1"), ["create", "update"])

        record = locks.describe("dev#dev")
        self.assertEqual(record["holder"], second)
        self.assertEqual(record["status"], locks.STATUS_RELEASED)

    def test_later_build_delivered_first_still_waits_for_earlier(self) -> None:
        first = self.submit("dev", "5.aaa111")
        self.clock.tick(5)
        second = self.submit("dev", "6.bbb222")

        # The newer build's message arrives before the older one's.
        orchestrator.advance(second, now=self.clock.now(), scheduler=self.scheduler, seq=0)
        b = persistence.get_attempt(second)
        self.assertEqual(b["phase"], "locking")
        self.assertEqual(b["lock_wait"]["position"], 1)
        self.assertEqual(persistence.get_attempt(first)["phase"], "pending")
        record = locks.describe("dev#dev", now=self.clock.now())
        self.assertIsNone(record.get("holder"))
        self.assertEqual(record["queue"], [first, second])

        self.drain()
        a = persistence.get_attempt(first)
        b = persistence.get_attempt(second)
        self.assertEqual((a["outcome"], b["outcome"]), ("succeeded", "succeeded"))
        self.assertGreaterEqual(_entered(b, "deploying"), a["completed_epoch"])
        self.assertEqual(locks.describe("dev#dev")["holder"], second)

    def test_history_lists_both_attempts_newest_first(self) -> None:
        first = self.submit("dev", "5.aaa111")
        self.clock.tick(1)
        second = self.submit("dev", "6.bbb222")
        self.drain()
        self.assertEqual([a["run_id"] for a in persistence.list_attempts("dev#dev")], [second, first])

    def test_lock_timeout_after_max_attempts(self) -> None:
        locks.acquire("dev#dev", "run-ghost", 100_000, now=T0)
        with patch.object(orchestrator, "LOCK_MAX_ATTEMPTS", 2):
            run_id = self.submit("dev", "5.abc123")
            self.drain()

        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["reason"], "LockTimeout")
        self.assertEqual(attempt["lock_attempts"], 2)
        record = locks.describe("dev#dev", now=self.clock.now())
        self.assertEqual(record["holder"], "run-ghost")
        self.assertEqual(record["queue"], [])

    def test_stale_lock_is_reclaimed(self) -> None:
        locks.acquire("dev#dev", "run-crashed", 60, now=T0 - 100)
        with self.assertLogs(level="WARNING") as captured:
            run_id = self.submit("dev", "5.abc123")
            self.drain()
        self.assertTrue(any("Reclaimed stale lock" in line for line in captured.output))
        self.assertEqual(persistence.get_attempt(run_id)["outcome"], "succeeded")
        self.assertEqual(persistence.get_attempt(run_id)["lock_attempts"], 0)


class DeadlineTests(OrchestratorTestCase):
    def test_stuck_pair_times_out_at_deadline_and_releases_lock(self) -> None:
        accounts = ["111111111111", "222222222222", "333333333333"]
        regions = ["us-east-1", "eu-west-1"]
        registry.set_target("prd", accounts=accounts, regions=regions)
        self.fake.outcomes[("333333333333", "eu-west-1")] = "RUNNING"

        with patch.object(lifecycle, "ATTEMPT_DEADLINE_SECONDS", 600):
            run_id = self.submit("prd", "7.feed42")
        self.drain()

        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["outcome"], "failed")
        self.assertEqual(attempt["reason"], "OperationTimedOut")
        self.assertEqual(attempt["completed_epoch"], T0 + 600)
        self.assertEqual(
            [(p["account"], p["region"], p["status"]) for p in attempt["failed_pairs"]],
            [("333333333333", "eu-west-1", "timed-out")],
        )

        operations = persistence.load_operations(run_id)
        self.assertEqual(len(operations), 6)
        self.assertEqual(sum(1 for op in operations.values() if op["status"] == "succeeded"), 5)

        record = locks.describe("prd#prd", now=self.clock.now())
        self.assertEqual(record["status"], locks.STATUS_RELEASED)
        # The lease was renewed while the stuck pair kept the attempt alive.
        self.assertEqual(record["renewed_epoch"], T0 + 600)


class FailurePathTests(OrchestratorTestCase):
    def setUp(self) -> None:
        super().setUp()
        registry.set_target("dev", accounts=[DEV_ACCOUNT], regions=["us-east-1"])

    def test_not_configured_environment_fails_without_lock(self) -> None:
        run_id = self.submit("qa", "5.abc123")
        self.drain()
        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["reason"], "NotConfigured")
        self.assertIsNone(locks.describe("qa#qa"))
        self.assertEqual(self.fake.calls, [])

    def test_malformed_build_fails_in_pending(self) -> None:
        bad = {"repository": "web", "environment": "dev", "version": "latest", "artifact_ref": "s3://b/p"}
        persistence.create_attempt(lifecycle.new_attempt(bad, run_id="run-bad", now=T0))
        self.scheduler.schedule("run-bad", 0, seq=0)
        self.drain()
        attempt = persistence.get_attempt("run-bad")
        self.assertEqual(attempt["reason"], "MalformedBuild")
        self.assertEqual(attempt["phase_history"][-1]["from"], "pending")

    def test_lost_lease_aborts_attempt(self) -> None:
        self.fake.outcomes[(DEV_ACCOUNT, "us-east-1")] = "RUNNING"
        run_id = self.submit("dev", "5.abc123")
        self.drain(max_steps=1)
        self.assertEqual(persistence.get_attempt(run_id)["phase"], "deploying")

        # The lease lapses and another run takes the key.
        intruder = locks.acquire("dev#dev", "run-intruder", 900, now=T0 + 1000)
        self.assertIsInstance(intruder, locks.LockHandle)

        orchestrator.advance(run_id, now=T0 + 1001, scheduler=self.scheduler)
        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["outcome"], "aborted")
        self.assertEqual(attempt["reason"], "LockLost")
        self.assertNotIn("lock", attempt)

        record = locks.describe("dev#dev", now=T0 + 1001)
        self.assertEqual(record["holder"], "run-intruder")
        self.assertEqual(record["status"], locks.STATUS_HELD)

    def test_transient_errors_exhaust_retries(self) -> None:
        with patch.object(fanout, "execute", side_effect=TransientAwsError("Throttling")) as execute:
            run_id = self.submit("dev", "5.abc123")
            self.drain()
        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["reason"], "TransientRetriesExhausted")
        self.assertEqual(execute.call_count, 6)
        self.assertEqual(locks.describe("dev#dev")["status"], locks.STATUS_RELEASED)

    def test_unexpected_exception_aborts_and_releases(self) -> None:
        with patch.object(fanout, "execute", side_effect=RuntimeError("boom")):
            run_id = self.submit("dev", "5.abc123")
            self.drain()
        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["outcome"], "aborted")
        self.assertEqual(attempt["reason"], "UnexpectedError")
        self.assertIn("RuntimeError: boom", attempt["detail"])
        self.assertEqual(locks.describe("dev#dev")["status"], locks.STATUS_RELEASED)

    def test_lock_granted_but_never_stored_is_released_on_abort(self) -> None:
        real_save = persistence.save_attempt

        def broken_save(attempt):
            if attempt.get("phase") == "deploying":
                raise RuntimeError("attempt store rejected the write")
            return real_save(attempt)

        with patch.object(persistence, "save_attempt", side_effect=broken_save):
            run_id = self.submit("dev", "5.abc123")
            self.drain()

        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["outcome"], "aborted")
        self.assertEqual(attempt["reason"], "UnexpectedError")
        self.assertNotIn("lock", attempt)
        record = locks.describe("dev#dev", now=self.clock.now())
        self.assertEqual(record["holder"], run_id)
        self.assertEqual(record["status"], locks.STATUS_RELEASED)

    def test_throttled_save_after_lock_grant_is_retried(self) -> None:
        real_save = persistence.save_attempt
        throttled = []

        def flaky_save(attempt):
            if attempt.get("phase") == "deploying" and not throttled:
                throttled.append(attempt["run_id"])
                raise client_error("ProvisionedThroughputExceededException", "UpdateItem", "Rate exceeded")
            return real_save(attempt)

        with patch.object(persistence, "save_attempt", side_effect=flaky_save):
            run_id = self.submit("dev", "5.abc123")
            self.drain()

        self.assertEqual(throttled, [run_id])
        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["outcome"], "succeeded")
        self.assertEqual(
            [h["to"] for h in attempt["phase_history"]],
            ["locking", "deploying", "verifying", "completed"],
        )
        self.assertEqual(locks.describe("dev#dev", now=self.clock.now())["status"], locks.STATUS_RELEASED)

    def test_throttled_lock_table_is_retried_then_exhausted(self) -> None:
        throttle = client_error("ProvisionedThroughputExceededException", "GetItem", "Rate exceeded")
        with patch.object(locks, "acquire", side_effect=throttle) as acquire:
            run_id = self.submit("dev", "5.abc123")
            self.drain()

        attempt = persistence.get_attempt(run_id)
        self.assertEqual(attempt["phase"], "failed")
        self.assertEqual(attempt["reason"], "TransientRetriesExhausted")
        self.assertEqual(attempt["transient_errors"], 6)
        self.assertEqual(acquire.call_count, 6)
        self.assertEqual(locks.describe("dev#dev", now=self.clock.now())["queue"], [])

    def test_stale_scheduled_message_is_dropped(self) -> None:
        self.fake.outcomes[(DEV_ACCOUNT, "us-east-1")] = "RUNNING"
        run_id = self.submit("dev", "5.abc123")
        self.drain(max_steps=1)
        stored = persistence.get_attempt(run_id)
        self.assertEqual(stored["schedule_seq"], 1)
        calls = len(self.fake.calls)

        result = orchestrator.advance(run_id, now=T0 + 30, scheduler=self.scheduler, seq=0)
        self.assertEqual(result["version"], stored["version"])
        self.assertEqual(len(self.fake.calls), calls)
        self.assertEqual(self.scheduler.pending(), 1)

    def test_unknown_run_id_is_ignored(self) -> None:
        self.assertIsNone(orchestrator.advance("run-missing", now=T0, scheduler=self.scheduler))


if __name__ == "__main__":
    unittest.main()
