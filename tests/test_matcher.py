"""Tests for the ordered match cascade."""
from decimal import Decimal

import pytest

from invoice_recon.core.errors import AmbiguousMatchError
from invoice_recon.core.models import Status
from invoice_recon.engine.matcher import COMPOSITE, CONTAINMENT, CONTENT_HASH, EXACT, Matcher

DRIVE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz0123456"


def test_exact_identity_wins_over_later_strategies(make_record):
    record = make_record(identity=DRIVE_ID, content_hash="etag-1")
    by_hash = make_record(row_id=1, content_hash="etag-1", vendor="Other")
    by_identity = make_record(row_id=2, identity=DRIVE_ID)

    found = Matcher().match(record, [by_hash, by_identity])

    assert found.candidate is by_identity
    assert found.strategy == EXACT


def test_identity_contained_in_stored_link(make_record):
    record = make_record(identity=DRIVE_ID)
    legacy = make_record(row_id=7, primary_file_link=f"see https://drive.google.com/uc?export=view&id={DRIVE_ID}&x=1 ")
    legacy.identity = "unrelated-identity-value-0000"

    found = Matcher().match(record, [legacy])

    assert found.strategy == CONTAINMENT
    assert found.candidate.row_id == 7


def test_content_hash_matches_when_identities_differ(make_record):
    record = make_record(identity="A" * 25, content_hash="etag-42")
    candidate = make_record(row_id=3, identity="B" * 25, content_hash="etag-42")

    found = Matcher().match(record, [candidate])

    assert found.strategy == CONTENT_HASH


def test_composite_only_considers_waiting_candidates(make_record):
    record = make_record(vendor="ACME", amount=Decimal("10.00"))
    submitted = make_record(row_id=1, vendor="acme", amount=Decimal("10"), status=Status.SUBMITTED)
    waiting = make_record(row_id=2, vendor="acme ", amount=Decimal("10"), status=Status.WAITING_FOR_CONFIRM)

    found = Matcher().match(record, [submitted, waiting])

    assert found.strategy == COMPOSITE
    assert found.candidate is waiting


def test_composite_rejects_empty_vendor(make_record):
    record = make_record(vendor="", amount=Decimal("10"))
    candidate = make_record(row_id=1, vendor="", amount=Decimal("10"), status=Status.WAITING_FOR_CONFIRM)

    assert Matcher().match(record, [candidate]) is None


def test_composite_ambiguity_raises_with_candidates(make_record):
    record = make_record(vendor="Acme", amount=Decimal("10"))
    pool = [
        make_record(row_id=1, vendor="acme", amount=Decimal("10"), status=Status.WAITING_FOR_CONFIRM),
        make_record(row_id=2, vendor="ACME", amount=Decimal("10.00"), status=Status.WAITING_FOR_CONFIRM),
    ]

    with pytest.raises(AmbiguousMatchError) as excinfo:
        Matcher().match(record, pool)

    assert [candidate.row_id for candidate in excinfo.value.candidates] == [1, 2]


def test_no_match_returns_none(make_record):
    assert Matcher().match(make_record(identity=DRIVE_ID), []) is None
    assert Matcher().match(make_record(identity=DRIVE_ID), [make_record(identity="Z" * 30)]) is None
