"""
Tests for the admin view of bikes currently out on test rides.
"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from unittest.mock import patch
from httpx import AsyncClient, ASGITransport

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from main import app
from admin_service import filter_test_drives, complete_and_release, serialize_test_drive
from db_models import (
    Customer, TestDrive, TestDriveStatus, Notification, NotificationType, DeliveryStatus,
    AuditLog, AuditLogEvent,
)


@pytest_asyncio.fixture
async def client():
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def add_drive(db, name="Alex Rider", phone="5551112222", bike_model="rad-power-bikes",
              status=TestDriveStatus.ACTIVE, payment_intent_id="pi_test_123", minutes_ago=0):
    customer = Customer(
        name=name,
        phone=phone,
        id_photo_url="https://cdn.example.com/customer-files/id-photos/1.png",
        signature_data="data:image/png;base64,AAAA",
        waiver_url="https://cdn.example.com/customer-files/waivers/1.png",
        waiver_signed=True,
    )
    db.add(customer)
    db.flush()
    start = datetime(2026, 6, 1, 17, 0) - timedelta(minutes=minutes_ago)
    drive = TestDrive(
        customer_id=customer.id,
        bike_model=bike_model,
        start_time=start,
        end_time=start + timedelta(minutes=10),
        duration_minutes=10,
        status=status,
        stripe_payment_intent_id=payment_intent_id,
        authorization_amount_cents=100 if payment_intent_id else None,
    )
    db.add(drive)
    db.commit()
    db.refresh(drive)
    return drive


class TestFilterTestDrives:
    """Search over customer name, phone and bike."""

    @pytest.fixture
    def drives(self, db_session):
        return [
            add_drive(db_session, name="Alice Smith", phone="555-111-0000", bike_model="rad-power-bikes"),
            add_drive(db_session, name="Bob Jones", phone="555-222-0000", bike_model="aventon"),
            add_drive(db_session, name="Carol Aventine", phone="555-333-0000", bike_model="other"),
        ]

    def test_empty_query_returns_all(self, drives):
        assert filter_test_drives(drives, "") == drives
        assert filter_test_drives(drives, None) == drives
        assert filter_test_drives(drives, "   ") == drives

    def test_name_is_case_insensitive(self, drives):
        assert [d.customer.name for d in filter_test_drives(drives, "ALICE")] == ["Alice Smith"]

    def test_phone_substring(self, drives):
        assert [d.customer.name for d in filter_test_drives(drives, "222")] == ["Bob Jones"]

    def test_bike_and_name_both_match(self, drives):
        names = [d.customer.name for d in filter_test_drives(drives, "aven")]
        assert names == ["Bob Jones", "Carol Aventine"]

    def test_no_match(self, drives):
        assert filter_test_drives(drives, "zzz") == []

    def test_result_is_subset_in_order(self, drives):
        result = filter_test_drives(drives, "555")
        assert result == drives


class TestSerializeTestDrive:
    def test_includes_customer_and_bike_name(self, db_session):
        drive = add_drive(db_session)
        data = serialize_test_drive(drive)
        assert data["bike_name"] == "Rad Power Bikes"
        assert data["status"] == "active"
        assert data["customer"]["name"] == "Alex Rider"
        assert data["customer"]["waiver_signed"] is True


class TestCompleteAndRelease:
    """Marking a bike returned."""

    @pytest.mark.asyncio
    async def test_completes_releases_and_thanks(self, db_session, sms, sms_provider):
        drive = add_drive(db_session)
        release = {"success": True, "payment_intent_id": "pi_test_123", "status": "canceled"}

        with patch("admin_service.cancel_payment_intent", return_value=release) as mock_cancel:
            result = await complete_and_release(db_session, drive.id, sms_service=sms)

        assert result == {
            "success": True,
            "test_drive_id": drive.id,
            "status": "completed",
            "hold_released": True,
            "completion_sms_sent": True,
        }
        mock_cancel.assert_called_once_with("pi_test_123")
        assert sms_provider.messages[0].body == sms.completion_message()
        notification = db_session.query(Notification).one()
        assert notification.message_type == NotificationType.COMPLETION
        assert notification.delivery_status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_second_completion_has_no_side_effects(self, db_session, sms, sms_provider):
        drive = add_drive(db_session)
        release = {"success": True, "payment_intent_id": "pi_test_123", "status": "canceled"}

        with patch("admin_service.cancel_payment_intent", return_value=release) as mock_cancel:
            await complete_and_release(db_session, drive.id, sms_service=sms)
            result = await complete_and_release(db_session, drive.id, sms_service=sms)

        assert result["status"] == "completed"
        assert result["hold_released"] is None
        assert mock_cancel.call_count == 1
        assert len(sms_provider.messages) == 1

    @pytest.mark.asyncio
    async def test_unknown_id_succeeds(self, db_session, sms, sms_provider):
        with patch("admin_service.cancel_payment_intent") as mock_cancel:
            result = await complete_and_release(db_session, 9999, sms_service=sms)
        assert result["success"] is True
        assert result["status"] is None
        mock_cancel.assert_not_called()
        assert sms_provider.messages == []

    @pytest.mark.asyncio
    async def test_release_failure_does_not_fail_completion(self, db_session, sms):
        drive = add_drive(db_session)
        release = {"success": False, "payment_intent_id": "pi_test_123", "error": "already canceled"}
        with patch("admin_service.cancel_payment_intent", return_value=release):
            result = await complete_and_release(db_session, drive.id, sms_service=sms)
        assert result["status"] == "completed"
        assert result["hold_released"] is False

    @pytest.mark.asyncio
    async def test_release_disabled(self, db_session, sms, monkeypatch):
        monkeypatch.setenv("RELEASE_HOLD_ON_RETURN", "false")
        drive = add_drive(db_session)
        with patch("admin_service.cancel_payment_intent") as mock_cancel:
            result = await complete_and_release(db_session, drive.id, sms_service=sms)
        mock_cancel.assert_not_called()
        assert result["hold_released"] is None

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_fail_completion(self, db_session, failing_sms):
        drive = add_drive(db_session, payment_intent_id=None)
        result = await complete_and_release(db_session, drive.id, sms_service=failing_sms)
        assert result["status"] == "completed"
        assert result["completion_sms_sent"] is False
        assert db_session.query(Notification).one().delivery_status == DeliveryStatus.FAILED


class TestAdminEndpoints:
    """Admin API."""

    @pytest.mark.asyncio
    async def test_list_active_newest_first(self, client, db_session):
        older = add_drive(db_session, name="Older", minutes_ago=30)
        newer = add_drive(db_session, name="Newer")
        add_drive(db_session, name="Returned", status=TestDriveStatus.COMPLETED)

        response = await client.get("/api/admin/test-drives")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [d["id"] for d in data["test_drives"]] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_list_with_search(self, client, db_session):
        add_drive(db_session, name="Alice Smith")
        add_drive(db_session, name="Bob Jones", bike_model="aventon")

        response = await client.get("/api/admin/test-drives", params={"q": "  bob "})

        data = response.json()
        assert data["query"] == "bob"
        assert [d["customer"]["name"] for d in data["test_drives"]] == ["Bob Jones"]

    @pytest.mark.asyncio
    async def test_mark_returned(self, client, db_session, sms):
        """The returned bike leaves the active list and the customer is thanked."""
        drive = add_drive(db_session)
        release = {"success": True, "payment_intent_id": "pi_test_123", "status": "canceled"}

        with patch("admin_service.get_sms_service", return_value=sms):
            with patch("admin_service.cancel_payment_intent", return_value=release):
                response = await client.post(f"/api/admin/test-drives/{drive.id}/complete")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        listing = await client.get("/api/admin/test-drives")
        assert listing.json()["count"] == 0

        events = {log.event for log in db_session.query(AuditLog).all()}
        assert AuditLogEvent.TEST_DRIVE_COMPLETED in events
        assert AuditLogEvent.HOLD_CANCELED in events

    @pytest.mark.asyncio
    async def test_mark_unknown_returned(self, client):
        response = await client.post("/api/admin/test-drives/9999/complete")
        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.asyncio
    async def test_orphaned_customers(self, client, db_session):
        add_drive(db_session, name="Booked")
        orphan = Customer(name="Orphan", phone="5550000000", id_photo_url="x", signature_data="y", waiver_signed=False)
        db_session.add(orphan)
        db_session.commit()

        response = await client.get("/api/admin/orphaned-customers", params={"older_than_minutes": 0})

        data = response.json()
        assert data["count"] == 1
        assert data["customers"][0]["name"] == "Orphan"

    @pytest.mark.asyncio
    async def test_waiver_document(self, client, db_session):
        drive = add_drive(db_session, name="Alex <b>Rider</b>")
        drive.customer.submitted_at = datetime(2026, 6, 1, 17, 0)
        db_session.commit()

        response = await client.get(f"/api/admin/test-drives/{drive.id}/waiver")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        body = response.text
        assert "San Diego Electric Bike Test Ride Waiver" in body
        assert "Alex &lt;b&gt;Rider&lt;/b&gt;" in body
        # 17:00 UTC shown in shop time
        assert "06/01/2026, 10:00:00 AM" in body
        assert 'src="data:image/png;base64,AAAA"' in body

    @pytest.mark.asyncio
    async def test_waiver_document_unknown_drive(self, client):
        response = await client.get("/api/admin/test-drives/9999/waiver")
        assert response.status_code == 404
