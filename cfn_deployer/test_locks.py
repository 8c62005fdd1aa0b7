"""Lock manager tests: leases, renewal, stale reclamation and the waiter queue."""

from __future__ import annotations

import unittest

from cfn_deployer import locks
from cfn_deployer._testing import T0, AwsTestCase
from cfn_deployer.config import LOCK_WAITER_TTL_SECONDS
from cfn_deployer.errors import LockLost

KEY = locks.lock_key("prd", "prd")


class LockLeaseTests(AwsTestCase):
    def test_acquire_free_lock_returns_handle(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, now=T0)
        self.assertIsInstance(handle, locks.LockHandle)
        self.assertEqual(handle.holder, "run-a")
        self.assertEqual(handle.expires_epoch, T0 + 900)

        record = locks.describe(KEY, now=T0 + 1)
        self.assertEqual(record["status"], locks.STATUS_HELD)
        self.assertEqual(record["holder"], "run-a")
        self.assertNotIn("fingerprint", record)

    def test_second_caller_is_busy_while_held(self) -> None:
        locks.acquire(KEY, "run-a", 900, now=T0)
        busy = locks.acquire(KEY, "run-b", 900, now=T0 + 5)
        self.assertIsInstance(busy, locks.LockBusy)
        self.assertEqual(busy.holder, "run-a")
        self.assertEqual(busy.expires_epoch, T0 + 900)
        self.assertEqual(busy.position, 0)
        self.assertEqual(locks.describe(KEY, now=T0 + 5)["queue"], ["run-b"])

    def test_reacquire_by_holder_returns_same_lease(self) -> None:
        first = locks.acquire(KEY, "run-a", 900, now=T0)
        again = locks.acquire(KEY, "run-a", 900, now=T0 + 10)
        self.assertEqual(first, again)

    def test_release_then_next_caller_acquires(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, now=T0)
        self.assertIsInstance(locks.acquire(KEY, "run-b", 900, now=T0 + 1), locks.LockBusy)

        self.assertTrue(locks.release(handle, now=T0 + 2))
        self.assertEqual(locks.describe(KEY, now=T0 + 2)["status"], locks.STATUS_RELEASED)

        nxt = locks.acquire(KEY, "run-b", 900, now=T0 + 3)
        self.assertIsInstance(nxt, locks.LockHandle)
        self.assertEqual(locks.describe(KEY, now=T0 + 3)["queue"], [])

    def test_release_is_idempotent(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, now=T0)
        self.assertTrue(locks.release(handle, now=T0 + 1))
        self.assertFalse(locks.release(handle, now=T0 + 2))

    def test_renew_extends_lease(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, now=T0)
        renewed = locks.renew(handle, 900, now=T0 + 700)
        self.assertEqual(renewed.expires_epoch, T0 + 1600)
        self.assertEqual(renewed.fingerprint, handle.fingerprint)
        # Still held after the original expiry.
        self.assertIsInstance(locks.acquire(KEY, "run-b", 900, now=T0 + 1000), locks.LockBusy)

    def test_renew_after_release_raises_lock_lost(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, now=T0)
        locks.release(handle, now=T0 + 1)
        with self.assertRaises(LockLost):
            locks.renew(handle, 900, now=T0 + 2)


    def test_release_held_by_matches_holder_only(self) -> None:
        locks.acquire(KEY, "run-a", 900, now=T0)
        self.assertFalse(locks.release_held_by(KEY, "run-b", now=T0 + 1))
        self.assertEqual(locks.describe(KEY, now=T0 + 1)["status"], locks.STATUS_HELD)

        self.assertTrue(locks.release_held_by(KEY, "run-a", now=T0 + 2))
        self.assertEqual(locks.describe(KEY, now=T0 + 2)["status"], locks.STATUS_RELEASED)
        self.assertFalse(locks.release_held_by(KEY, "run-a", now=T0 + 3))

    def test_release_held_by_without_record(self) -> None:
        self.assertFalse(locks.release_held_by(KEY, "run-a", now=T0))

class StaleLockTests(AwsTestCase):
    def test_expired_lease_is_reclaimed(self) -> None:
        stale = locks.acquire(KEY, "run-a", 60, now=T0)
        self.assertEqual(locks.describe(KEY, now=T0 + 61)["status"], locks.STATUS_EXPIRED)

        with self.assertLogs(level="WARNING") as captured:
            handle = locks.acquire(KEY, "run-b", 900, now=T0 + 61)
        self.assertIsInstance(handle, locks.LockHandle)
        self.assertTrue(any("Reclaimed stale lock" in line for line in captured.output))
        self.assertNotEqual(handle.fingerprint, stale.fingerprint)

    def test_original_holder_cannot_renew_or_release_after_reclaim(self) -> None:
        stale = locks.acquire(KEY, "run-a", 60, now=T0)
        locks.acquire(KEY, "run-b", 900, now=T0 + 61)

        with self.assertRaises(LockLost):
            locks.renew(stale, 900, now=T0 + 62)
        self.assertFalse(locks.release(stale, now=T0 + 62))

        record = locks.describe(KEY, now=T0 + 63)
        self.assertEqual(record["holder"], "run-b")
        self.assertEqual(record["status"], locks.STATUS_HELD)


class LockQueueTests(AwsTestCase):
    def test_free_lock_goes_to_oldest_waiter(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, priority=100, now=T0)
        locks.acquire(KEY, "run-c", 900, priority=300, now=T0 + 1)
        locks.acquire(KEY, "run-b", 900, priority=200, now=T0 + 2)
        self.assertEqual(locks.describe(KEY, now=T0 + 2)["queue"], ["run-b", "run-c"])

        locks.release(handle, now=T0 + 3)

        late = locks.acquire(KEY, "run-c", 900, priority=300, now=T0 + 4)
        self.assertIsInstance(late, locks.LockBusy)
        self.assertIsNone(late.holder)
        self.assertEqual(late.position, 1)

        self.assertIsInstance(locks.acquire(KEY, "run-b", 900, priority=200, now=T0 + 5), locks.LockHandle)

    def test_ticket_keeps_original_priority(self) -> None:
        locks.acquire(KEY, "run-a", 900, priority=100, now=T0)
        locks.acquire(KEY, "run-b", 900, priority=200, now=T0 + 1)
        locks.acquire(KEY, "run-c", 900, priority=300, now=T0 + 2)
        # A later retry with a different priority does not jump the queue.
        locks.acquire(KEY, "run-c", 900, priority=1, now=T0 + 3)
        self.assertEqual(locks.describe(KEY, now=T0 + 3)["queue"], ["run-b", "run-c"])

    def test_withdrawn_waiter_no_longer_blocks(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, priority=100, now=T0)
        locks.acquire(KEY, "run-b", 900, priority=200, now=T0 + 1)
        locks.acquire(KEY, "run-c", 900, priority=300, now=T0 + 2)

        locks.withdraw(KEY, "run-b")
        locks.release(handle, now=T0 + 3)
        self.assertIsInstance(locks.acquire(KEY, "run-c", 900, priority=300, now=T0 + 4), locks.LockHandle)

    def test_withdraw_without_record_is_a_no_op(self) -> None:
        locks.withdraw(KEY, "run-x")
        self.assertIsNone(locks.describe(KEY, now=T0))

    def test_abandoned_ticket_expires(self) -> None:
        handle = locks.acquire(KEY, "run-a", 900, priority=100, now=T0)
        locks.acquire(KEY, "run-b", 900, priority=200, now=T0 + 1)
        locks.release(handle, now=T0 + 2)

        later = T0 + 1 + LOCK_WAITER_TTL_SECONDS + 1
        acquired = locks.acquire(KEY, "run-c", 900, priority=300, now=later)
        self.assertIsInstance(acquired, locks.LockHandle)
        self.assertEqual(locks.describe(KEY, now=later)["queue"], [])

    def test_enqueued_ticket_holds_its_place_before_first_acquire(self) -> None:
        self.assertEqual(locks.enqueue(KEY, "run-earlier", priority=T0, now=T0), 0)
        self.assertEqual(locks.enqueue(KEY, "run-later", priority=T0 + 5, now=T0 + 5), 1)
        record = locks.describe(KEY, now=T0 + 5)
        self.assertEqual(record["status"], locks.STATUS_RELEASED)
        self.assertEqual(record["queue"], ["run-earlier", "run-later"])

        # The later run reaches the free lock first and still has to wait.
        busy = locks.acquire(KEY, "run-later", 900, priority=T0 + 5, now=T0 + 6)
        self.assertIsInstance(busy, locks.LockBusy)
        self.assertIsNone(busy.holder)
        self.assertEqual(busy.position, 1)

        self.assertIsInstance(locks.acquire(KEY, "run-earlier", 900, priority=T0, now=T0 + 7), locks.LockHandle)

    def test_same_second_tickets_keep_arrival_order(self) -> None:
        locks.enqueue(KEY, "run-zz", priority=T0, now=T0)
        locks.enqueue(KEY, "run-aa", priority=T0, now=T0)
        self.assertEqual(locks.describe(KEY, now=T0)["queue"], ["run-zz", "run-aa"])
        self.assertIsInstance(locks.acquire(KEY, "run-aa", 900, priority=T0, now=T0 + 1), locks.LockBusy)

    def test_enqueue_is_idempotent(self) -> None:
        locks.enqueue(KEY, "run-a", priority=T0, now=T0)
        locks.enqueue(KEY, "run-b", priority=T0 + 1, now=T0 + 1)
        self.assertEqual(locks.enqueue(KEY, "run-a", priority=T0 + 9, now=T0 + 9), 0)
        self.assertEqual(locks.describe(KEY, now=T0 + 9)["queue"], ["run-a", "run-b"])

    def test_enqueue_by_holder_is_a_no_op(self) -> None:
        locks.acquire(KEY, "run-a", 900, now=T0)
        self.assertEqual(locks.enqueue(KEY, "run-a", now=T0 + 1), 0)
        self.assertEqual(locks.describe(KEY, now=T0 + 1)["queue"], [])


if __name__ == "__main__":
    unittest.main()
