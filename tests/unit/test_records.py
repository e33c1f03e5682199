"""Unit tests for record handles and text folding."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from qrpop_store.errors import InvalidIdentifier
from qrpop_store.persistence.database import coerce_identifier, fold_text
from qrpop_store.records import (
    QRRecord,
    RecordKind,
    TemplateRecord,
    from_storage,
    to_storage,
)


class TestRecordKind:
    """Tests for RecordKind."""

    def test_parse_entity_names(self):
        assert RecordKind.parse("QREntity") is RecordKind.QR
        assert RecordKind.parse("TemplateEntity") is RecordKind.TEMPLATE
        assert RecordKind.parse(RecordKind.QR) is RecordKind.QR

    def test_parse_unknown_name(self):
        with pytest.raises(ValueError):
            RecordKind.parse("LogoEntity")

    def test_record_classes(self):
        assert RecordKind.QR.record_class is QRRecord
        assert RecordKind.TEMPLATE.record_class is TemplateRecord


class TestManagedRecord:
    """Tests for unattached record handles."""

    def test_persistent_fields(self):
        assert QRRecord.persistent_fields() == (
            "id", "title", "created", "viewed", "design", "builder",
        )
        assert "logo" in TemplateRecord.persistent_fields()
        assert "builder" not in TemplateRecord.persistent_fields()

    def test_unattached_record_is_mutable(self):
        """Identifier and creation date are free until the record is stored."""
        record = QRRecord(id=uuid.uuid4())
        new_id = uuid.uuid4()
        record.id = new_id

        assert record.id == new_id
        assert record.object_reference is None
        assert not record.has_changes

    def test_timestamps_default_to_now(self):
        before = datetime.now(timezone.utc)
        record = TemplateRecord(id=uuid.uuid4())
        assert record.created >= before
        assert record.created.tzinfo is not None


class TestStorageTimestamps:
    """Tests for timestamp serialization."""

    def test_lexical_order_is_chronological(self):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        later = base + timedelta(microseconds=500)
        assert to_storage(base) < to_storage(later)

    def test_naive_is_utc(self):
        naive = datetime(2024, 5, 1, 12, 0)
        assert from_storage(to_storage(naive)) == naive.replace(tzinfo=timezone.utc)

    def test_offsets_are_normalized(self):
        plus_two = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_storage(plus_two) == "2024-05-01T12:00:00.000000+00:00"


class TestFoldText:
    """Tests for case and diacritic folding."""

    @pytest.mark.parametrize(
        "value, folded",
        [
            ("Café", "cafe"),
            ("CRÈME Brûlée", "creme brulee"),
            ("Straße", "strasse"),
            ("plain", "plain"),
        ],
    )
    def test_fold(self, value, folded):
        assert fold_text(value) == folded

    def test_fold_none(self):
        assert fold_text(None) is None


class TestCoerceIdentifier:
    """Tests for identifier validation."""

    def test_uuid_passthrough(self):
        identifier = uuid.uuid4()
        assert coerce_identifier(identifier) is identifier

    def test_string_parsed(self):
        identifier = uuid.uuid4()
        assert coerce_identifier(str(identifier)) == identifier

    @pytest.mark.parametrize("value", [None, "", "not-a-uuid"])
    def test_invalid(self, value):
        with pytest.raises(InvalidIdentifier):
            coerce_identifier(value)
