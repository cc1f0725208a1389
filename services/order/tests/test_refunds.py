from datetime import datetime, timedelta

from orderflow.fsm.refunds import refund_eligibility, service_cancellation

NOW = datetime(2025, 3, 1, 12, 0, 0)


class TestPhysicalRefunds:
    def test_delivered_20_days_ago_is_past_the_window(self):
        decision = refund_eligibility("physical", {"delivered_at": (NOW - timedelta(days=20)).isoformat()}, NOW)
        assert not decision.allowed
        assert "14 days" in decision.reason

    def test_delivered_last_week(self):
        decision = refund_eligibility("physical", {"delivered_at": (NOW - timedelta(days=7)).isoformat()}, NOW)
        assert decision.allowed

    def test_not_delivered(self):
        assert not refund_eligibility("physical", {}, NOW).allowed


class TestDigitalRefunds:
    def test_never_downloaded_is_always_refundable(self):
        data = {"granted_at": (NOW - timedelta(days=60)).isoformat(), "download_count": 0}
        assert refund_eligibility("digital", data, NOW).allowed

    def test_downloaded_within_seven_days(self):
        data = {"granted_at": (NOW - timedelta(days=3)).isoformat(), "download_count": 2}
        assert refund_eligibility("digital", data, NOW).allowed

    def test_downloaded_after_seven_days(self):
        data = {"granted_at": (NOW - timedelta(days=8)).isoformat(), "download_count": 1}
        decision = refund_eligibility("digital", data, NOW)
        assert not decision.allowed
        assert "7 days" in decision.reason


class TestServiceCancellation:
    def test_within_24h_of_appointment(self):
        decision = service_cancellation(NOW + timedelta(hours=5), NOW)
        assert not decision.allowed
        assert "24h" in decision.reason

    def test_more_than_24h_ahead(self):
        assert service_cancellation(NOW + timedelta(days=3), NOW).allowed

    def test_past_booking(self):
        assert service_cancellation(NOW - timedelta(days=1), NOW).allowed

    def test_no_booking(self):
        assert refund_eligibility("service", {}, NOW).allowed

    def test_as_dict(self):
        assert service_cancellation(NOW + timedelta(hours=1), NOW).as_dict() == {
            "eligible": False,
            "reason": "Cannot cancel within 24h of appointment",
        }
