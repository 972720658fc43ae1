import unittest
from datetime import datetime, timedelta

from sqlalchemy.dialects import mssql

from lab_lending.tests import support
from lab_lending.models.lending_models import LoanRequest
from lab_lending.services.errors import (
    IndexUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from lab_lending.services.inventory_service import delete_material, get_material, upsert_material
from lab_lending.services.lifecycle import RequestStatus
from lab_lending.services.request_service import (
    DEFAULT_PURPOSE,
    INDEXED_QUERY,
    SCAN_QUERY,
    STATUS_INDEX,
    USER_INDEX,
    RequestFilter,
    create_request,
    delete_request,
    get_request,
    list_pending_requests,
    list_requests,
    list_requests_by_status,
    list_user_requests,
    set_request_status,
)


class RequestServiceTestCase(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.open_session()

    def tearDown(self):
        self.db.close()

    def _create(self, user_id="student-1", material_id=None, **overrides):
        material_id = material_id or self.material_id
        data = support.request_payload(user_id, material_id)
        data.update(overrides)
        return create_request(self.db, data, today=support.TODAY)


class CreateRequestTests(RequestServiceTestCase):
    def setUp(self):
        super().setUp()
        self.material_id = support.add_material(self.db, quantity=2, available=2, imageUrl="/uploads/materials/m.png")

    def test_new_request_is_pending_and_denormalized(self):
        created = self._create()
        self.assertEqual(created["status"], "pending")
        self.assertEqual(created["materialName"], "Microscopio")
        self.assertEqual(created["materialImage"], "/uploads/materials/m.png")
        self.assertEqual(created["studentEmail"], "ana@lab.edu")
        self.assertEqual(created["purpose"], DEFAULT_PURPOSE)
        self.assertIsNotNone(created["createdAt"])
        self.assertEqual(get_material(self.db, self.material_id)["available"], 2)

    def test_material_name_comes_from_the_catalog(self):
        created = self._create(materialName="Telescopio")
        self.assertEqual(created["materialName"], "Microscopio")

    def test_caller_cannot_choose_initial_status(self):
        created = self._create(status="approved", purpose="Práctica de biología")
        self.assertEqual(created["status"], "pending")
        self.assertEqual(created["purpose"], "Práctica de biología")

    def test_end_before_start_stores_nothing(self):
        start = support.TODAY + timedelta(days=3)
        with self.assertRaises(ValidationError):
            self._create(startDate=start.isoformat(), endDate=start.isoformat())
        with self.assertRaises(ValidationError):
            self._create(startDate=start.isoformat(), endDate=(start - timedelta(days=1)).isoformat())
        self.assertEqual(support.count_requests(self.db), 0)

    def test_loan_longer_than_fourteen_days_fails(self):
        start = support.TODAY + timedelta(days=1)
        with self.assertRaisesRegex(ValidationError, "maximum loan"):
            self._create(startDate=start.isoformat(), endDate=(start + timedelta(days=15)).isoformat())
        self.assertEqual(support.count_requests(self.db), 0)

    def test_unknown_material(self):
        with self.assertRaisesRegex(NotFoundError, "Material not found"):
            self._create(material_id="missing")

    def test_unavailable_material(self):
        upsert_material(self.db, self.material_id, {"available": 0})
        with self.assertRaisesRegex(UnavailableError, "not available"):
            self._create()
        self.assertEqual(support.count_requests(self.db), 0)

    def test_get_and_delete(self):
        created = self._create()
        self.assertEqual(get_request(self.db, created["id"])["id"], created["id"])
        self.assertTrue(delete_request(self.db, created["id"]))
        self.assertIsNone(get_request(self.db, created["id"]))
        self.assertTrue(delete_request(self.db, created["id"]))


class StatusTransitionTests(RequestServiceTestCase):
    def setUp(self):
        super().setUp()
        self.material_id = support.add_material(self.db, quantity=2, available=2)

    def _available(self):
        return get_material(self.db, self.material_id)["available"]

    def test_full_loan_cycle_restores_inventory(self):
        request_id = self._create()["id"]
        self.assertEqual(self._available(), 2)

        approved = set_request_status(self.db, request_id, "approved")
        self.assertEqual(approved["status"], "approved")
        self.assertEqual(self._available(), 2)

        delivered = set_request_status(self.db, request_id, "entregado")
        self.assertEqual(delivered["status"], "entregado")
        self.assertEqual(self._available(), 2)

        returned = set_request_status(self.db, request_id, "devuelto")
        self.assertEqual(returned["status"], "devuelto")
        self.assertEqual(self._available(), 2)

    def test_return_adds_one_unit(self):
        upsert_material(self.db, self.material_id, {"available": 1})
        request_id = self._create()["id"]
        set_request_status(self.db, request_id, RequestStatus.APPROVED)
        set_request_status(self.db, request_id, RequestStatus.DELIVERED)
        set_request_status(self.db, request_id, "returned")
        self.assertEqual(self._available(), 2)

    def test_second_return_does_not_exceed_quantity(self):
        upsert_material(self.db, self.material_id, {"available": 1})
        request_id = self._create()["id"]
        set_request_status(self.db, request_id, "approved")
        set_request_status(self.db, request_id, "entregado")
        set_request_status(self.db, request_id, "devuelto")
        again = set_request_status(self.db, request_id, "returned")
        self.assertEqual(again["status"], "devuelto")
        self.assertEqual(self._available(), 2)

    def test_two_returns_on_full_stock_stay_clamped(self):
        first = self._create()["id"]
        second = self._create(user_id="student-2")["id"]
        for request_id in (first, second):
            set_request_status(self.db, request_id, "approved")
            set_request_status(self.db, request_id, "entregado")
        set_request_status(self.db, first, "devuelto")
        set_request_status(self.db, second, "devuelto")
        self.assertEqual(self._available(), 2)

    def test_approve_after_reject_keeps_status(self):
        request_id = self._create()["id"]
        rejected = set_request_status(self.db, request_id, "rechazado", "Sin stock para esa fecha")
        self.assertEqual(rejected["adminNotes"], "Sin stock para esa fecha")
        with self.assertRaises(InvalidTransitionError):
            set_request_status(self.db, request_id, "approved")
        self.assertEqual(get_request(self.db, request_id)["status"], "rechazado")

    def test_approve_twice_is_noop(self):
        request_id = self._create()["id"]
        first = set_request_status(self.db, request_id, "approved")
        second = set_request_status(self.db, request_id, "approved", "ignored")
        self.assertEqual(second["status"], "approved")
        self.assertEqual(second["updatedAt"], first["updatedAt"])
        self.assertIsNone(second["adminNotes"])

    def test_return_from_pending_is_rejected(self):
        request_id = self._create()["id"]
        with self.assertRaises(InvalidTransitionError):
            set_request_status(self.db, request_id, "devuelto")
        self.assertEqual(self._available(), 2)

    def test_unknown_request_and_status(self):
        with self.assertRaises(NotFoundError):
            set_request_status(self.db, "missing", "approved")
        request_id = self._create()["id"]
        with self.assertRaises(ValidationError):
            set_request_status(self.db, request_id, "archived")

    def test_return_with_deleted_material_still_moves_status(self):
        request_id = self._create()["id"]
        set_request_status(self.db, request_id, "approved")
        set_request_status(self.db, request_id, "entregado")
        delete_material(self.db, self.material_id)
        with self.assertLogs("lab_lending.requests", level="WARNING"):
            returned = set_request_status(self.db, request_id, "devuelto")
        self.assertEqual(returned["status"], "devuelto")


class RequestListingTests(RequestServiceTestCase):
    def setUp(self):
        super().setUp()
        self.material_id = support.add_material(self.db, quantity=5, available=5)
        base = datetime(2031, 3, 1, 9, 0, 0)
        self.ids = []
        for offset, user_id in enumerate(["ana", "luis", "ana", "ana", "luis"]):
            created = self._create(user_id=user_id)
            row = self.db.get(LoanRequest, created["id"])
            row.CreatedDate = base + timedelta(minutes=offset)
            self.ids.append(created["id"])
        self.db.commit()
        set_request_status(self.db, self.ids[1], "approved")
        set_request_status(self.db, self.ids[3], "approved")

    def _ids(self, rows):
        return [row["id"] if isinstance(row, dict) else row.RequestID for row in rows]

    def test_user_requests_newest_first(self):
        self.assertEqual(self._ids(list_user_requests(self.db, "ana")), [self.ids[3], self.ids[2], self.ids[0]])

    def test_status_listing(self):
        self.assertEqual(self._ids(list_pending_requests(self.db)), [self.ids[4], self.ids[2], self.ids[0]])
        self.assertEqual(self._ids(list_requests_by_status(self.db, "approved")), [self.ids[3], self.ids[1]])

    def test_all_requests(self):
        self.assertEqual(self._ids(list_requests(self.db)), list(reversed(self.ids)))

    def test_both_strategies_agree(self):
        for request_filter in [
            RequestFilter(),
            RequestFilter(user_id="ana"),
            RequestFilter(user_id="luis"),
            RequestFilter(status=RequestStatus.PENDING),
            RequestFilter(status=RequestStatus.APPROVED),
            RequestFilter(status=RequestStatus.RETURNED),
        ]:
            with self.subTest(request_filter=request_filter):
                indexed = self._ids(INDEXED_QUERY.fetch(self.db, request_filter))
                scanned = self._ids(SCAN_QUERY.fetch(self.db, request_filter))
                self.assertEqual(indexed, scanned)

    def test_ordering_compiles_for_sql_server(self):
        stmt = INDEXED_QUERY.statement(RequestFilter(user_id="ana"))
        compiled = str(stmt.compile(dialect=mssql.dialect()))
        order_clause = compiled.split("ORDER BY", 1)[1]
        self.assertNotIn("IS NULL,", order_clause)
        self.assertIn("CASE WHEN", order_clause)

    def test_missing_created_at_sorts_last(self):
        row = self.db.get(LoanRequest, self.ids[4])
        row.CreatedDate = None
        self.db.commit()
        expected = [self.ids[3], self.ids[2], self.ids[1], self.ids[0], self.ids[4]]
        self.assertEqual(self._ids(INDEXED_QUERY.fetch(self.db, RequestFilter())), expected)
        self.assertEqual(self._ids(SCAN_QUERY.fetch(self.db, RequestFilter())), expected)

    def test_missing_index_falls_back_to_scan(self):
        expected = self._ids(list_user_requests(self.db, "ana"))
        support.drop_request_index(self.db, USER_INDEX)

        with self.assertRaises(IndexUnavailableError):
            INDEXED_QUERY.fetch(self.db, RequestFilter(user_id="ana"))
        with self.assertLogs("lab_lending.requests", level="WARNING") as captured:
            fallback = self._ids(list_user_requests(self.db, "ana"))
        self.assertEqual(fallback, expected)
        self.assertIn(USER_INDEX, captured.output[0])

    def test_status_fallback_matches_indexed_result(self):
        expected = self._ids(list_pending_requests(self.db))
        support.drop_request_index(self.db, STATUS_INDEX)
        with self.assertLogs("lab_lending.requests", level="WARNING"):
            self.assertEqual(self._ids(list_pending_requests(self.db)), expected)
        # The user index is still there, so user listings stay on the indexed path.
        self.assertEqual(self._ids(INDEXED_QUERY.fetch(self.db, RequestFilter(user_id="luis"))), [self.ids[4], self.ids[1]])


if __name__ == "__main__":
    unittest.main()
