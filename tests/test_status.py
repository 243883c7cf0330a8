"""Tests for canonical statuses, status mapping and cache keys."""

import pytest

from terminal_charges.cache import (
    CacheNamespace,
    assignment_key,
    idempotency_key,
    scheduler_lock_key,
    terminal_busy_key,
)
from terminal_charges.errors import (
    ChargeError,
    ChargeValidationError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from terminal_charges.status import (
    TERMINAL_STATUSES,
    ChargeStatus,
    TerminalStatus,
    map_provider_status,
    map_terminal_status,
)


class TestMapProviderStatus:
    """Provider vocabulary to canonical status."""

    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("pending", ChargeStatus.PENDING),
            ("processing", ChargeStatus.PENDING),
            ("approved", ChargeStatus.APPROVED),
            ("declined", ChargeStatus.DECLINED),
            ("failed", ChargeStatus.ERROR),
            ("cancelled", ChargeStatus.CANCELLED),
            ("reversed", ChargeStatus.REVERSED),
            ("timeout", ChargeStatus.TIMEOUT),
        ],
    )
    def test_known_statuses(self, provider_status, expected):
        assert map_provider_status(provider_status) == expected

    def test_case_and_whitespace_insensitive(self):
        assert map_provider_status("  APPROVED ") == ChargeStatus.APPROVED

    @pytest.mark.parametrize("provider_status", ["settled", "", None, 42])
    def test_unknown_maps_to_error(self, provider_status):
        """Test unrecognized values never raise and land in error."""
        assert map_provider_status(provider_status) == ChargeStatus.ERROR


class TestChargeStatus:
    def test_only_pending_is_not_terminal(self):
        assert not ChargeStatus.PENDING.is_terminal
        assert TERMINAL_STATUSES == set(ChargeStatus) - {ChargeStatus.PENDING}

    def test_string_values(self):
        assert ChargeStatus("approved") is ChargeStatus.APPROVED
        assert ChargeStatus.TIMEOUT.value == "timeout"


class TestMapTerminalStatus:
    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("ONLINE", TerminalStatus.ONLINE),
            ("offline", TerminalStatus.OFFLINE),
            ("BUSY", TerminalStatus.BUSY),
            ("PROCESSING", TerminalStatus.BUSY),
            ("REBOOTING", TerminalStatus.UNKNOWN),
            (None, TerminalStatus.UNKNOWN),
        ],
    )
    def test_mapping(self, provider_status, expected):
        assert map_terminal_status(provider_status) == expected


class TestErrors:
    @pytest.mark.parametrize(
        "error_cls,status_code",
        [
            (NotFoundError, 404),
            (ConflictError, 409),
            (UnauthorizedError, 401),
            (UpstreamUnavailableError, 503),
            (ChargeValidationError, 400),
        ],
    )
    def test_status_codes(self, error_cls, status_code):
        error = error_cls("boom")
        assert isinstance(error, ChargeError)
        assert error.status_code == status_code
        assert error.message == "boom"

    def test_upstream_keeps_provider_status(self):
        error = UpstreamUnavailableError("down", upstream_status=502)
        assert error.upstream_status == 502
        assert error.status_code == 503


class TestCacheKeys:
    def test_namespaces_do_not_collide(self):
        keys = {
            str(idempotency_key("T1", 1)),
            str(terminal_busy_key("T1")),
            str(assignment_key("T1", "1")),
            str(scheduler_lock_key("T1")),
        }
        assert len(keys) == 4

    def test_idempotency_key_format(self):
        key = idempotency_key("order-1", 5000)
        assert key.namespace == CacheNamespace.IDEMPOTENCY
        assert str(key) == "terminal_charges:idempotency:order-1:5000"

    def test_separator_in_parts_is_escaped(self):
        """Test a colon inside a reference cannot forge another key."""
        assert str(assignment_key("a:b", "c")) != str(assignment_key("a", "b:c"))
        assert str(idempotency_key("a:1", 2)) != str(idempotency_key("a", 12))
