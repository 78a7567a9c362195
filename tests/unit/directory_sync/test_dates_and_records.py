from datetime import date, datetime, timezone

from app.modules.directory_sync.domain.dates import (
    safe_parse_date,
    safe_parse_datetime,
    start_date_or_today,
    today,
)
from app.modules.directory_sync.domain.graph_models import (
    RemoteManager,
    RemoteUser,
    is_user_entry,
)


def test_parse_datetime_accepts_zulu_suffix():
    parsed = safe_parse_datetime("2024-03-01T08:30:00Z")
    assert parsed == datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)


def test_parse_datetime_assumes_utc_for_naive_values():
    parsed = safe_parse_datetime("2024-03-01T08:30:00")
    assert parsed is not None
    assert parsed.tzinfo is not None
    assert parsed.utcoffset().total_seconds() == 0


def test_parse_datetime_normalizes_offsets_to_utc():
    parsed = safe_parse_datetime("2024-03-01T10:30:00+02:00")
    assert parsed == datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)


def test_garbage_dates_are_dropped():
    assert safe_parse_datetime("not a date") is None
    assert safe_parse_datetime("") is None
    assert safe_parse_datetime(None) is None
    assert safe_parse_date("31/02/2020") is None


def test_parse_date_from_datetime_string():
    assert safe_parse_date("2021-06-15T00:00:00Z") == date(2021, 6, 15)
    assert safe_parse_date("2021-06-15") == date(2021, 6, 15)


def test_start_date_falls_back_to_today():
    assert start_date_or_today("garbage") == today()
    assert start_date_or_today(None) == today()
    assert start_date_or_today("2020-01-02") == date(2020, 1, 2)


def test_remote_user_prefers_mail_over_principal_name():
    user = RemoteUser.model_validate(
        {"id": "u1", "mail": "ada@example.com", "userPrincipalName": "ada@corp.onmicrosoft.com"}
    )
    assert user.email == "ada@example.com"

    fallback = RemoteUser.model_validate(
        {"id": "u2", "mail": None, "userPrincipalName": " bob@corp.onmicrosoft.com "}
    )
    assert fallback.email == "bob@corp.onmicrosoft.com"


def test_remote_user_ignores_unknown_keys_and_parses_manager():
    user = RemoteUser.model_validate(
        {
            "id": "u1",
            "mail": "ada@example.com",
            "displayName": "Ada",
            "jobTitle": "Engineer",
            "employeeHireDate": "2020-01-01T00:00:00Z",
            "manager": {"id": "m1", "userPrincipalName": "boss@example.com"},
            "someFutureField": {"nested": True},
        }
    )
    assert user.job_title == "Engineer"
    assert user.hire_date == "2020-01-01T00:00:00Z"
    assert user.manager == RemoteManager(id="m1", email="boss@example.com")
    assert user.graph_value("jobTitle") == "Engineer"
    assert user.graph_value("unknown") is None


def test_offsets_pushing_past_the_calendar_edge_are_dropped():
    # Valid ISO strings whose UTC equivalent falls outside year 1..9999.
    assert safe_parse_datetime("9999-12-31T23:00:00-05:00") is None
    assert safe_parse_date("9999-12-31T23:00:00-05:00") is None
    assert safe_parse_datetime("0001-01-01T01:00:00+05:00") is None
    assert start_date_or_today("9999-12-31T23:00:00-05:00") == today()

    assert safe_parse_date("9999-12-31T23:00:00Z") == date(9999, 12, 31)


def test_only_user_typed_entries_are_users():
    assert is_user_entry({"@odata.type": "#microsoft.graph.user", "id": "u1"})
    assert not is_user_entry({"@odata.type": "#microsoft.graph.group", "id": "g1"})
    assert not is_user_entry({"id": "x"})
