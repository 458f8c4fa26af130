from datetime import UTC, datetime, timedelta

from backend.app.core.time import epoch_millis, utc_now
from backend.app.services.reference_numbers import consolidated_invoice_number


def test_utc_now_is_timezone_aware_utc():
    value = utc_now()
    assert value.tzinfo is UTC


def test_epoch_millis():
    assert epoch_millis(datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)) == 1000
    assert epoch_millis() > 0


def test_consolidated_numbers_follow_the_clock():
    now = utc_now()
    assert consolidated_invoice_number(now) != consolidated_invoice_number(now + timedelta(milliseconds=1))
