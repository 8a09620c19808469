import tempfile
import threading
import unittest
from datetime import datetime
from pathlib import Path

from room_booking import (
    AUTO_REJECT_REASON,
    ConflictError,
    ForbiddenError,
    InvalidStateTransition,
    MeetingType,
    NotFoundError,
    NotificationType,
    ReservationLifecycle,
    ReservationRequest,
    ReservationStatus,
    Role,
    ValidationError,
)
from room_booking.lifecycle import ALLOWED_TRANSITIONS


class LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.data_dir = Path(temp_dir.name) / "data"
        self.now = datetime(2026, 3, 2, 8, 0)
        self.lifecycle = ReservationLifecycle.from_data_dir(self.data_dir, now_provider=lambda: self.now)

        self.room = self.lifecycle.rooms.add_room("Meeting Room 1", capacity=10, max_duration=240, room_id="room-r")
        self.admin = self.lifecycle.users.add_user("Ada Admin", "ada@company.com", Role.ADMIN).as_actor()
        self.alice = self.lifecycle.users.add_user("Alice", "alice@company.com").as_actor()
        self.bob = self.lifecycle.users.add_user("Bob", "bob@company.com").as_actor()

    def request(self, start: str, end: str, meeting_type: MeetingType = MeetingType.INTERNAL, **overrides) -> ReservationRequest:
        fields = {
            "room_id": self.room.room_id,
            "date": "2026-03-02",
            "start_time": start,
            "end_time": end,
            "meeting_type": meeting_type,
            "purpose": "Planning",
        }
        fields.update(overrides)
        return ReservationRequest(**fields)

    def assertApprovedNeverOverlap(self) -> None:
        approved = self.lifecycle.repository.find_by_slot(self.room.room_id, "2026-03-02", ReservationStatus.APPROVED)
        for index, first in enumerate(approved):
            for second in approved[index + 1 :]:
                self.assertFalse(
                    first.start_minutes < second.end_minutes and first.end_minutes > second.start_minutes,
                    f"{first.start_time}-{first.end_time} overlaps {second.start_time}-{second.end_time}",
                )


class TestCreate(LifecycleTestCase):
    def test_internal_is_approved_immediately(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))

        self.assertIs(record.status, ReservationStatus.APPROVED)
        self.assertEqual(record.approved_at, self.now)
        self.assertEqual(record.user_id, self.alice.user_id)

    def test_external_starts_pending(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))

        self.assertIs(record.status, ReservationStatus.PENDING)
        self.assertIsNone(record.approved_at)

    def test_time_errors_are_reported_before_date_errors(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.lifecycle.create(self.alice, self.request("25:00", "26:00", date="bogus"))
        self.assertIn("Invalid time", caught.exception.message)

        with self.assertRaises(ValidationError) as caught:
            self.lifecycle.create(self.alice, self.request("08:00", "09:30", date="bogus"))
        self.assertIn("Office hours", caught.exception.message)

        with self.assertRaises(ValidationError) as caught:
            self.lifecycle.create(self.alice, self.request("10:00", "11:00", date="bogus"))
        self.assertIn("Invalid date", caught.exception.message)
        self.assertEqual(self.lifecycle.repository.list_all(), [])

    def test_hand_edited_bad_row_does_not_block_the_day(self) -> None:
        existing = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        path = self.data_dir / "reservations.yaml"
        path.write_text(path.read_text(encoding="utf-8").replace("'10:00'", "ten", 1), encoding="utf-8")

        with self.assertLogs("room_booking.yaml_store", level="WARNING"):
            record = self.lifecycle.create(self.bob, self.request("15:00", "16:00"))

        self.assertIs(record.status, ReservationStatus.APPROVED)
        self.assertIsNone(self.lifecycle.repository.get(existing.reservation_id))
        self.assertIn("start_time: ten", path.read_text(encoding="utf-8"))

    def test_pending_requests_for_the_same_slot_coexist(self) -> None:
        first = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        second = self.lifecycle.create(self.bob, self.request("10:00", "11:00", MeetingType.EXTERNAL))

        self.assertIs(first.status, ReservationStatus.PENDING)
        self.assertIs(second.status, ReservationStatus.PENDING)

    def test_external_food_requires_preference(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL, food=True))
        self.assertIn("veg_nonveg", caught.exception.message)

        record = self.lifecycle.create(
            self.alice,
            self.request("10:00", "11:00", MeetingType.EXTERNAL, food=True, veg_nonveg="veg"),
        )
        self.assertEqual(record.veg_nonveg, "veg")

    def test_times_are_stored_zero_padded(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("9:30", "10:00"))
        self.assertEqual(record.start_time, "09:30")

    def test_duration_exactly_at_the_maximum_is_admitted(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.lifecycle.create(self.alice, self.request("10:00", "14:01"))
        self.assertIn("4h", caught.exception.message)

        record = self.lifecycle.create(self.alice, self.request("10:00", "14:00"))
        self.assertIs(record.status, ReservationStatus.APPROVED)

    def test_office_hour_edges(self) -> None:
        long_room = self.lifecycle.rooms.add_room("Hall", capacity=50, max_duration=660, room_id="hall")
        with self.assertRaises(ValidationError):
            self.lifecycle.create(self.alice, self.request("08:59", "10:00", room_id=long_room.room_id))
        with self.assertRaises(ValidationError):
            self.lifecycle.create(self.alice, self.request("19:00", "20:01", room_id=long_room.room_id))

        record = self.lifecycle.create(self.alice, self.request("09:00", "20:00", room_id=long_room.room_id))
        self.assertEqual((record.start_time, record.end_time), ("09:00", "20:00"))

    def test_unknown_room_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.lifecycle.create(self.alice, self.request("10:00", "11:00", room_id="nope"))

    def test_admins_are_notified_of_new_bookings(self) -> None:
        self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))

        inbox = self.lifecycle.notifications.list_for_user(self.admin.user_id)
        self.assertEqual(len(inbox), 1)
        self.assertEqual(inbox[0].title, "New Booking")
        self.assertIn("Alice booked Meeting Room 1 on 2026-03-02", inbox[0].message)
        self.assertEqual(self.lifecycle.notifications.list_for_user(self.bob.user_id), [])

    def test_inactive_admins_are_not_notified(self) -> None:
        retired = self.lifecycle.users.add_user("Old Admin", "old@company.com", Role.ADMIN, active=False)
        self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        self.assertEqual(self.lifecycle.notifications.list_for_user(retired.user_id), [])


class TestScenarios(LifecycleTestCase):
    def test_internal_conflict_and_pending_approval_conflict(self) -> None:
        a = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        self.assertIs(a.status, ReservationStatus.APPROVED)

        with self.assertRaises(ConflictError) as caught:
            self.lifecycle.create(self.bob, self.request("10:30", "11:30"))
        self.assertIn("10:00–11:00", caught.exception.message)

        c = self.lifecycle.create(self.bob, self.request("10:30", "11:30", MeetingType.EXTERNAL))
        self.assertIs(c.status, ReservationStatus.PENDING)

        with self.assertRaises(ConflictError):
            self.lifecycle.approve(self.admin, c.reservation_id)
        self.assertIs(self.lifecycle.repository.get(c.reservation_id).status, ReservationStatus.PENDING)
        self.assertApprovedNeverOverlap()

    def test_approval_cascades_to_overlapping_pending(self) -> None:
        d = self.lifecycle.create(self.alice, self.request("09:00", "10:00", MeetingType.EXTERNAL))
        e = self.lifecycle.create(self.bob, self.request("09:30", "10:30", MeetingType.EXTERNAL))

        result = self.lifecycle.approve(self.admin, d.reservation_id)

        self.assertEqual(result.auto_rejected_count, 1)
        self.assertIs(result.reservation.status, ReservationStatus.APPROVED)
        self.assertEqual(result.reservation.approved_at, self.now)

        stored_e = self.lifecycle.repository.get(e.reservation_id)
        self.assertIs(stored_e.status, ReservationStatus.REJECTED)
        self.assertEqual(stored_e.rejection_reason, AUTO_REJECT_REASON)

        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.approve(self.admin, e.reservation_id)

    def test_cascade_rejects_every_overlapping_competitor_only(self) -> None:
        winner = self.lifecycle.create(self.alice, self.request("10:00", "12:00", MeetingType.EXTERNAL))
        overlapping = [
            self.lifecycle.create(self.bob, self.request(start, end, MeetingType.EXTERNAL))
            for start, end in [("09:00", "10:30"), ("11:00", "11:30"), ("11:45", "13:00")]
        ]
        touching = self.lifecycle.create(self.bob, self.request("12:00", "13:00", MeetingType.EXTERNAL))
        other_day = self.lifecycle.create(self.bob, self.request("10:00", "12:00", MeetingType.EXTERNAL, date="2026-03-03"))

        result = self.lifecycle.approve(self.admin, winner.reservation_id)

        self.assertEqual(result.auto_rejected_count, 3)
        for record in overlapping:
            self.assertIs(self.lifecycle.repository.get(record.reservation_id).status, ReservationStatus.REJECTED)
        self.assertIs(self.lifecycle.repository.get(touching.reservation_id).status, ReservationStatus.PENDING)
        self.assertIs(self.lifecycle.repository.get(other_day.reservation_id).status, ReservationStatus.PENDING)

    def test_cascade_notifies_winner_and_each_loser(self) -> None:
        d = self.lifecycle.create(self.alice, self.request("09:00", "10:00", MeetingType.EXTERNAL))
        self.lifecycle.create(self.bob, self.request("09:30", "10:30", MeetingType.EXTERNAL))

        self.lifecycle.approve(self.admin, d.reservation_id)

        alice_inbox = self.lifecycle.notifications.list_for_user(self.alice.user_id)
        bob_inbox = self.lifecycle.notifications.list_for_user(self.bob.user_id)
        self.assertEqual([(item.title, item.type) for item in alice_inbox], [("Booking Approved", NotificationType.SUCCESS)])
        self.assertEqual([(item.title, item.type) for item in bob_inbox], [("Booking Auto-Rejected", NotificationType.ERROR)])


class TestTransitions(LifecycleTestCase):
    def test_every_status_has_a_transition_entry(self) -> None:
        self.assertEqual(set(ALLOWED_TRANSITIONS), set(ReservationStatus))
        self.assertEqual(ALLOWED_TRANSITIONS[ReservationStatus.REJECTED], frozenset())
        self.assertEqual(ALLOWED_TRANSITIONS[ReservationStatus.CANCELLED], frozenset())

    def test_only_admins_approve_or_reject(self) -> None:
        pending = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        with self.assertRaises(ForbiddenError):
            self.lifecycle.approve(self.alice, pending.reservation_id)
        with self.assertRaises(ForbiddenError):
            self.lifecycle.reject(self.alice, pending.reservation_id, "no")

    def test_reject_requires_reason_and_notifies(self) -> None:
        pending = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        with self.assertRaises(ValidationError):
            self.lifecycle.reject(self.admin, pending.reservation_id, "   ")

        rejected = self.lifecycle.reject(self.admin, pending.reservation_id, "Room reserved for audit")

        self.assertIs(rejected.status, ReservationStatus.REJECTED)
        self.assertEqual(rejected.rejection_reason, "Room reserved for audit")
        inbox = self.lifecycle.notifications.list_for_user(self.alice.user_id)
        self.assertEqual(inbox[0].message, "Reason: Room reserved for audit")

    def test_approved_cannot_be_rejected_or_reapproved(self) -> None:
        approved = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.reject(self.admin, approved.reservation_id, "late")
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.approve(self.admin, approved.reservation_id)

    def test_terminal_states_do_not_move(self) -> None:
        pending = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        self.lifecycle.cancel(self.alice, pending.reservation_id)

        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.approve(self.admin, pending.reservation_id)
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.cancel(self.admin, pending.reservation_id)
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.reject(self.admin, pending.reservation_id, "late")
        self.assertIs(self.lifecycle.repository.get(pending.reservation_id).status, ReservationStatus.CANCELLED)

    def test_unknown_reservation_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.lifecycle.cancel(self.alice, "missing")
        with self.assertRaises(NotFoundError):
            self.lifecycle.approve(self.admin, "missing")


class TestCancel(LifecycleTestCase):
    def test_requester_cancels_before_start(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        cancelled = self.lifecycle.cancel(self.alice, record.reservation_id)
        self.assertIs(cancelled.status, ReservationStatus.CANCELLED)

    def test_other_employee_cannot_cancel(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        with self.assertRaises(ForbiddenError):
            self.lifecycle.cancel(self.bob, record.reservation_id)

    def test_after_start_only_admin_cancels(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        self.now = datetime(2026, 3, 2, 10, 0)

        with self.assertRaises(ForbiddenError):
            self.lifecycle.cancel(self.alice, record.reservation_id)

        cancelled = self.lifecycle.cancel(self.admin, record.reservation_id)
        self.assertIs(cancelled.status, ReservationStatus.CANCELLED)

    def test_cancelling_frees_the_slot(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        self.lifecycle.cancel(self.alice, record.reservation_id)

        replacement = self.lifecycle.create(self.bob, self.request("10:00", "11:00"))
        self.assertIs(replacement.status, ReservationStatus.APPROVED)

    def test_creation_date_check_is_not_retroactive(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        self.now = datetime(2026, 3, 5, 9, 0)

        result = self.lifecycle.approve(self.admin, record.reservation_id)
        self.assertIs(result.reservation.status, ReservationStatus.APPROVED)


class TestQueries(LifecycleTestCase):
    def test_employees_see_only_their_own(self) -> None:
        mine = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        self.lifecycle.create(self.bob, self.request("12:00", "13:00"))

        self.assertEqual([r.reservation_id for r in self.lifecycle.list_reservations(self.alice)], [mine.reservation_id])
        self.assertEqual(len(self.lifecycle.list_reservations(self.admin)), 2)

        with self.assertRaises(ForbiddenError):
            self.lifecycle.get_reservation(self.bob, mine.reservation_id)
        self.assertEqual(self.lifecycle.get_reservation(self.admin, mine.reservation_id), mine)

    def test_filters_and_ordering(self) -> None:
        early = self.lifecycle.create(self.alice, self.request("09:00", "10:00", purpose="Budget review"))
        late = self.lifecycle.create(self.bob, self.request("15:00", "16:00", MeetingType.EXTERNAL, purpose="Vendor pitch"))
        next_day = self.lifecycle.create(self.alice, self.request("09:00", "10:00", date="2026-03-03"))

        ordered = self.lifecycle.list_reservations(self.admin)
        self.assertEqual(
            [r.reservation_id for r in ordered],
            [next_day.reservation_id, late.reservation_id, early.reservation_id],
        )

        pending = self.lifecycle.list_reservations(self.admin, status="pending")
        self.assertEqual([r.reservation_id for r in pending], [late.reservation_id])

        external = self.lifecycle.list_reservations(self.admin, meeting_type=MeetingType.EXTERNAL)
        self.assertEqual([r.reservation_id for r in external], [late.reservation_id])

        by_day = self.lifecycle.list_reservations(self.admin, date="2026-03-03")
        self.assertEqual([r.reservation_id for r in by_day], [next_day.reservation_id])

        by_purpose = self.lifecycle.list_reservations(self.admin, q="budget")
        self.assertEqual([r.reservation_id for r in by_purpose], [early.reservation_id])

        by_requester = self.lifecycle.list_reservations(self.admin, q="bob@")
        self.assertEqual([r.reservation_id for r in by_requester], [late.reservation_id])

    def test_unknown_status_filter_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            self.lifecycle.list_reservations(self.admin, status="archived")

    def test_pending_count_is_admin_only(self) -> None:
        self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        self.lifecycle.create(self.bob, self.request("10:00", "11:00", MeetingType.EXTERNAL))

        self.assertEqual(self.lifecycle.pending_count(self.admin), 2)
        with self.assertRaises(ForbiddenError):
            self.lifecycle.pending_count(self.alice)

    def test_room_schedule_lists_live_reservations(self) -> None:
        approved = self.lifecycle.create(self.alice, self.request("13:00", "14:00"))
        pending = self.lifecycle.create(self.bob, self.request("09:00", "10:00", MeetingType.EXTERNAL))
        cancelled = self.lifecycle.create(self.bob, self.request("15:00", "16:00"))
        self.lifecycle.cancel(self.bob, cancelled.reservation_id)

        schedule = self.lifecycle.room_schedule(self.room.room_id, "2026-03-02")
        self.assertEqual([r.reservation_id for r in schedule], [pending.reservation_id, approved.reservation_id])

    def test_describe_joins_room_and_requester(self) -> None:
        record = self.lifecycle.create(self.alice, self.request("10:00", "11:00"))
        payload = self.lifecycle.describe(record)
        self.assertEqual(payload["user_name"], "Alice")
        self.assertEqual(payload["room_name"], "Meeting Room 1")
        self.assertEqual(payload["status"], "approved")


class FailingSink:
    def notify(self, user_id, title, message, type=NotificationType.INFO):
        raise RuntimeError("mail server down")


class TestNotificationFailures(LifecycleTestCase):
    def test_sink_failure_does_not_roll_back_the_transition(self) -> None:
        self.lifecycle.notifications = FailingSink()
        pending = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))

        with self.assertLogs("room_booking.lifecycle", level="ERROR"):
            result = self.lifecycle.approve(self.admin, pending.reservation_id)

        self.assertIs(result.reservation.status, ReservationStatus.APPROVED)
        self.assertIs(self.lifecycle.repository.get(pending.reservation_id).status, ReservationStatus.APPROVED)
        events = (self.data_dir / "reservation_events.yaml").read_text(encoding="utf-8")
        self.assertIn("NOTIFICATION_FAILED", events)


class TestConcurrency(LifecycleTestCase):
    def run_parallel(self, jobs) -> tuple[list, list]:
        results: list = []
        errors: list = []
        barrier = threading.Barrier(len(jobs))

        def runner(job) -> None:
            barrier.wait()
            try:
                results.append(job())
            except Exception as error:
                errors.append(error)

        threads = [threading.Thread(target=runner, args=(job,)) for job in jobs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors

    def test_concurrent_internal_creations_confirm_only_one(self) -> None:
        actors = [self.alice, self.bob] * 4
        jobs = [
            (lambda actor=actor, offset=index: self.lifecycle.create(actor, self.request(f"10:{offset * 5:02d}", "11:30")))
            for index, actor in enumerate(actors)
        ]

        results, errors = self.run_parallel(jobs)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), len(jobs) - 1)
        self.assertTrue(all(isinstance(error, ConflictError) for error in errors))
        self.assertApprovedNeverOverlap()

    def test_concurrent_approvals_of_overlapping_pendings(self) -> None:
        pendings = [
            self.lifecycle.create(self.alice if index % 2 else self.bob, self.request(f"1{index}:00", f"1{index + 1}:30", MeetingType.EXTERNAL))
            for index in range(4)
        ]
        jobs = [(lambda record=record: self.lifecycle.approve(self.admin, record.reservation_id)) for record in pendings]

        results, errors = self.run_parallel(jobs)

        self.assertGreaterEqual(len(results), 1)
        self.assertTrue(all(isinstance(error, (InvalidStateTransition, ConflictError)) for error in errors))
        self.assertApprovedNeverOverlap()
        statuses = {self.lifecycle.repository.get(record.reservation_id).status for record in pendings}
        self.assertNotIn(ReservationStatus.PENDING, statuses)

    def test_two_instances_on_one_data_dir_keep_every_write(self) -> None:
        other = ReservationLifecycle.from_data_dir(self.data_dir, now_provider=lambda: self.now)
        jobs = [
            (
                lambda lifecycle=(other if index % 2 else self.lifecycle), index=index: lifecycle.create(
                    self.alice,
                    self.request(
                        f"{9 + index % 6:02d}:00",
                        f"{10 + index % 6:02d}:00",
                        date="2026-03-02" if index < 6 else "2026-03-03",
                    ),
                )
            )
            for index in range(12)
        ]

        results, errors = self.run_parallel(jobs)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 12)
        self.assertEqual(len(self.lifecycle.repository.list_all()), 12)
        self.assertEqual(len(other.repository.list_all()), 12)
        self.assertEqual(list(self.data_dir.glob("*.tmp")), [])

    def test_two_instances_confirm_only_one_overlapping_booking(self) -> None:
        other = ReservationLifecycle.from_data_dir(self.data_dir, now_provider=lambda: self.now)
        jobs = [
            (lambda lifecycle=(other if index % 2 else self.lifecycle), index=index: lifecycle.create(
                self.bob, self.request(f"10:{index * 5:02d}", "11:30")
            ))
            for index in range(6)
        ]

        results, errors = self.run_parallel(jobs)

        self.assertEqual(len(results), 1)
        self.assertTrue(all(isinstance(error, ConflictError) for error in errors))
        self.assertApprovedNeverOverlap()

    def test_approve_racing_cancel_leaves_one_outcome(self) -> None:
        pending = self.lifecycle.create(self.alice, self.request("10:00", "11:00", MeetingType.EXTERNAL))
        jobs = [
            lambda: self.lifecycle.approve(self.admin, pending.reservation_id),
            lambda: self.lifecycle.cancel(self.alice, pending.reservation_id),
        ]

        results, errors = self.run_parallel(jobs)

        # Either order ends cancelled: an approved booking can still be cancelled by its owner.
        final = self.lifecycle.repository.get(pending.reservation_id)
        self.assertIs(final.status, ReservationStatus.CANCELLED)
        self.assertEqual(len(results) + len(errors), 2)
        self.assertTrue(all(isinstance(error, InvalidStateTransition) for error in errors))


if __name__ == "__main__":
    unittest.main()
