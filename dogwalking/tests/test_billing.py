import threading
import unittest
from decimal import Decimal

from dogwalking.walks import billing
from dogwalking.walks.errors import StoreUnavailable
from dogwalking.walks.records import Client, Walk, Walker
from dogwalking.walks.stores import InMemoryClientStore, InMemoryWalkStore


def completed_walk(walk_id: int, client_id: int = 1, amount: str | None = "25.00", **fields) -> Walk:
    return Walk(
        id=walk_id,
        client_id=client_id,
        pet_id=1,
        date="2024-06-03",
        status=fields.pop("status", "completed"),
        billing_amount=Decimal(amount) if amount is not None else None,
        **fields,
    )


class FailingClientStore(InMemoryClientStore):
    def update_balance(self, client_id: int, amount: Decimal, *, walk_id: int) -> bool:
        raise StoreUnavailable("database is locked")


class ApplyCompletedWalksTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clients = InMemoryClientStore([Client(id=1, balance=Decimal("10.00"))])

    def run_reconciliation(self, walks: list[Walk]) -> billing.ReconciliationResult:
        self.walk_store = InMemoryWalkStore(walks)
        return billing.apply_completed_walks(
            self.walk_store.fetch_all_walks(), self.clients, self.walk_store
        )

    def test_completed_walk_is_added_to_balance(self) -> None:
        result = self.run_reconciliation([completed_walk(1)])
        self.assertEqual(result.applied_count, 1)
        self.assertEqual(result.applied, [1])
        self.assertEqual(self.clients.get_client(1).balance, Decimal("35.00"))
        self.assertTrue(self.walk_store.get_walk(1).is_balance_applied)

    def test_already_applied_walk_is_not_billed_again(self) -> None:
        result = self.run_reconciliation([completed_walk(1, is_balance_applied=True)])
        self.assertEqual(result.applied_count, 0)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("10.00"))

    def test_scheduled_and_cancelled_walks_are_ignored(self) -> None:
        result = self.run_reconciliation(
            [completed_walk(1, status="scheduled"), completed_walk(2, status="cancelled")]
        )
        self.assertEqual(result.applied_count, 0)
        self.assertEqual(result.skipped_count, 0)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("10.00"))

    def test_missing_amount_is_skipped_and_reported(self) -> None:
        result = self.run_reconciliation([completed_walk(1, amount=None), completed_walk(2)])
        self.assertEqual(result.missing_billing_amount, [1])
        self.assertEqual(result.applied, [2])
        self.assertFalse(self.walk_store.get_walk(1).is_balance_applied)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("35.00"))

    def test_unknown_client_is_skipped_and_reported(self) -> None:
        result = self.run_reconciliation([completed_walk(1, client_id=99), completed_walk(2)])
        self.assertEqual(result.client_not_found, [1])
        self.assertEqual(result.applied, [2])
        self.assertEqual(result.skipped_count, 1)
        self.assertFalse(self.walk_store.get_walk(1).is_balance_applied)

    def test_second_run_applies_nothing(self) -> None:
        walk_store = InMemoryWalkStore([completed_walk(1), completed_walk(2, amount="12.50")])
        first = billing.apply_completed_walks(walk_store.fetch_all_walks(), self.clients, walk_store)
        second = billing.apply_completed_walks(walk_store.fetch_all_walks(), self.clients, walk_store)
        self.assertEqual(first.applied_count, 2)
        self.assertEqual(second.applied_count, 0)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("47.50"))

    def test_stale_snapshot_does_not_double_bill(self) -> None:
        walk_store = InMemoryWalkStore([completed_walk(1)])
        snapshot = walk_store.fetch_all_walks()
        billing.apply_completed_walks(snapshot, self.clients, walk_store)
        again = billing.apply_completed_walks(snapshot, self.clients, walk_store)
        self.assertEqual(again.applied_count, 0)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("35.00"))

    def test_walk_completed_after_a_run_is_billed_next_run(self) -> None:
        walk_store = InMemoryWalkStore([completed_walk(1, status="scheduled")])
        first = billing.apply_completed_walks(walk_store.fetch_all_walks(), self.clients, walk_store)
        self.assertTrue(walk_store.mark_completed(1))
        self.assertFalse(walk_store.mark_completed(1))
        second = billing.apply_completed_walks(walk_store.fetch_all_walks(), self.clients, walk_store)
        self.assertEqual((first.applied_count, second.applied_count), (0, 1))
        self.assertEqual(self.clients.get_client(1).balance, Decimal("35.00"))

    def test_failed_credit_is_reported_and_recoverable(self) -> None:
        failing = FailingClientStore([Client(id=1, balance=Decimal("10.00"))])
        walk_store = InMemoryWalkStore([completed_walk(1)])
        with self.assertLogs("dogwalking.walks.billing", level="ERROR"):
            result = billing.apply_completed_walks(walk_store.fetch_all_walks(), failing, walk_store)
        self.assertEqual(result.failed, [1])
        self.assertEqual(result.applied_count, 0)
        self.assertTrue(walk_store.get_walk(1).is_balance_applied)

        recovered = billing.resume_pending_credits(walk_store.fetch_all_walks(), self.clients)
        self.assertEqual(recovered, 1)
        self.assertEqual(self.clients.get_client(1).balance, Decimal("35.00"))
        self.assertEqual(billing.resume_pending_credits(walk_store.fetch_all_walks(), self.clients), 0)

    def test_balance_matches_applied_walks_minus_payments(self) -> None:
        clients = InMemoryClientStore([Client(id=1), Client(id=2)])
        walk_store = InMemoryWalkStore(
            [
                completed_walk(1, amount="20.00"),
                completed_walk(2, amount="15.25"),
                completed_walk(3, client_id=2, amount="30.00"),
                completed_walk(4, amount=None),
            ]
        )
        billing.apply_completed_walks(walk_store.fetch_all_walks(), clients, walk_store)
        clients.record_payment(1, Decimal("5.00"), "2024-06-05")
        for client_id in (1, 2):
            with self.subTest(client_id=client_id):
                expected = billing.expected_balance(
                    walk_store.fetch_walks_for_client(client_id),
                    clients.payments.get(client_id, []),
                )
                self.assertEqual(clients.get_client(client_id).balance, expected)
        self.assertEqual(clients.get_client(1).balance, Decimal("30.25"))

    def test_result_to_dict(self) -> None:
        result = self.run_reconciliation([completed_walk(1), completed_walk(2, client_id=5)])
        self.assertEqual(
            result.to_dict(),
            {
                "applied_count": 1,
                "applied": [1],
                "skipped_count": 1,
                "missing_billing_amount": [],
                "client_not_found": [2],
                "failed": [],
            },
        )


class WalkerEarningsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.walker = Walker(id=7, name="Sam Smith")

    def test_rate_follows_duration_bucket(self) -> None:
        self.assertEqual(billing.walker_rate_for_duration(self.walker, 20), Decimal("15.00"))
        self.assertEqual(billing.walker_rate_for_duration(self.walker, 30), Decimal("20.00"))
        self.assertEqual(billing.walker_rate_for_duration(self.walker, 45), Decimal("35.00"))
        self.assertEqual(billing.walker_rate_for_duration(self.walker, "overnight"), Decimal("80.00"))
        self.assertEqual(billing.walker_rate_for_duration(self.walker, None), Decimal("20.00"))

    def test_only_unrecorded_completed_walks_earn(self) -> None:
        walks = [
            completed_walk(1, walker_id=7, duration=60),
            completed_walk(2, walker_id=7, duration=20),
            completed_walk(3, walker_id=7, status="scheduled"),
            completed_walk(4),
            completed_walk(5, walker_id=8),
        ]
        earnings = billing.compute_walker_earnings(walks, {7: self.walker}, already_earned=[2])
        self.assertEqual(
            earnings, [billing.WalkerEarning(walker_id=7, walk_id=1, amount=Decimal("35.00"))]
        )


class AllocateWalkerPaymentTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.unpaid = [(1, Decimal("20.00")), (2, Decimal("35.00")), (3, Decimal("15.00"))]

    def test_exact_payout_settles_everything(self) -> None:
        settled, remaining = billing.allocate_walker_payment(self.unpaid, Decimal("70.00"))
        self.assertEqual(settled, [1, 2, 3])
        self.assertEqual(remaining, Decimal("0.00"))

    def test_partial_payout_stops_at_first_uncovered_earning(self) -> None:
        settled, remaining = billing.allocate_walker_payment(self.unpaid, Decimal("50.00"))
        self.assertEqual(settled, [1])
        self.assertEqual(remaining, Decimal("30.00"))

    def test_overpayment_is_left_unallocated(self) -> None:
        settled, remaining = billing.allocate_walker_payment(self.unpaid, Decimal("100.00"))
        self.assertEqual(settled, [1, 2, 3])
        self.assertEqual(remaining, Decimal("30.00"))
        self.assertEqual(billing.allocate_walker_payment([], Decimal("5")), ([], Decimal("5")))


class ConcurrentReconciliationTestCase(unittest.TestCase):
    THREADS = 8

    def run_in_threads(self, target) -> None:
        barrier = threading.Barrier(self.THREADS)

        def worker() -> None:
            barrier.wait()
            target()

        threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def test_each_walk_is_credited_once(self) -> None:
        clients = InMemoryClientStore([Client(id=1), Client(id=2)])
        walk_store = InMemoryWalkStore(
            [completed_walk(walk_id, client_id=walk_id % 2 + 1, amount="1.00") for walk_id in range(1, 41)]
        )
        locks = billing.ClientLocks()
        results = []

        def reconcile() -> None:
            results.append(
                billing.apply_completed_walks(walk_store.fetch_all_walks(), clients, walk_store, locks)
            )

        self.run_in_threads(reconcile)
        applied = [walk_id for result in results for walk_id in result.applied]
        self.assertEqual(sorted(applied), list(range(1, 41)))
        self.assertEqual(clients.get_client(1).balance, Decimal("20.00"))
        self.assertEqual(clients.get_client(2).balance, Decimal("20.00"))

    def test_same_client_payments_are_not_lost(self) -> None:
        clients = InMemoryClientStore([Client(id=1, balance=Decimal("100.00"))])
        locks = billing.ClientLocks()

        def pay() -> None:
            for _ in range(25):
                with locks.hold(1):
                    clients.record_payment(1, Decimal("0.50"), "2024-06-05")

        self.run_in_threads(pay)
        self.assertEqual(clients.get_client(1).balance, Decimal("0.00"))
        self.assertEqual(len(clients.payments[1]), self.THREADS * 25)


if __name__ == "__main__":
    unittest.main()
