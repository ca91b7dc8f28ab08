import asyncio

import aiohttp

from engine.config import Settings
from engine.models import VerificationStatus
from engine.verifier import ERROR_MARKER, VerificationClient, backoff_delay


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert backoff_delay(1, base=0.5, cap=0.75) == 0.75


def test_verify_parses_service_payload(verifier, verify_service) -> None:
    verify_service.responses["a@x.com"] = {
        "email_status": "valid",
        "email_mx": "aspmx.l.google.com",
        "provider": "google",
    }

    outcome = asyncio.run(verifier.verify("  a@x.com "))

    assert outcome.address == "a@x.com"
    assert outcome.status == VerificationStatus.valid
    assert outcome.mx == "aspmx.l.google.com"
    assert outcome.provider == "google"
    assert verify_service.calls == ["a@x.com"]


def test_verify_maps_unknown_service_status_to_unverifiable(verifier, verify_service) -> None:
    verify_service.responses["c@x.com"] = {"email_status": "catch_all"}
    verify_service.responses["d@x.com"] = {"email_status": "INVALID"}

    assert asyncio.run(verifier.verify("c@x.com")).status == VerificationStatus.unverifiable
    assert asyncio.run(verifier.verify("d@x.com")).status == VerificationStatus.invalid


def test_verify_short_circuits_placeholders_without_network(verifier, verify_service) -> None:
    for value in ["", "   ", "null", "UNDEFINED"]:
        outcome = asyncio.run(verifier.verify(value))
        assert outcome.status == VerificationStatus.invalid
        assert outcome.mx == ""

    assert verify_service.calls == []


def test_verify_exhausted_retries_degrade_to_error_outcome(verifier, verify_service, sleeps) -> None:
    verify_service.responses["b@y.com"] = asyncio.TimeoutError()

    outcome = asyncio.run(verifier.verify("b@y.com"))

    assert outcome.status == VerificationStatus.invalid
    assert outcome.mx == ERROR_MARKER
    assert outcome.provider == ERROR_MARKER
    assert verify_service.calls == ["b@y.com"] * 3
    assert sleeps == [1.0, 2.0]


def test_verify_retries_non_200_then_succeeds(verifier, verify_service, sleeps) -> None:
    verify_service.responses["a@x.com"] = [503, {"email_status": "valid"}]

    outcome = asyncio.run(verifier.verify("a@x.com"))

    assert outcome.status == VerificationStatus.valid
    assert len(verify_service.calls) == 2
    assert sleeps == [1.0]


def test_verify_retries_connection_errors(verifier, verify_service, sleeps) -> None:
    verify_service.responses["a@x.com"] = [
        aiohttp.ClientConnectionError("reset"),
        aiohttp.ClientConnectionError("reset"),
        {"email_status": "invalid"},
    ]

    outcome = asyncio.run(verifier.verify("a@x.com"))

    assert outcome.status == VerificationStatus.invalid
    assert outcome.mx == ""
    assert len(verify_service.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_from_settings_applies_retry_configuration(verify_service) -> None:
    settings = Settings(verify_max_attempts=2, backoff_base_seconds=0.25)
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    client = VerificationClient.from_settings(settings, session=verify_service, sleep_fn=record_sleep)
    verify_service.responses["x@y.com"] = 500

    outcome = asyncio.run(client.verify("x@y.com"))

    assert outcome.mx == ERROR_MARKER
    assert len(verify_service.calls) == 2
    assert waits == [0.25]
