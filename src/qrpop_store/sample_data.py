"""Preview data for simulators and demos."""

from __future__ import annotations

import uuid

from .facade import Persistence
from .payloads import BuilderModel, DesignModel, encode_builder, encode_design, random_color
from .records import QRRecord, TemplateRecord, utcnow


def seed_sample_data(persistence: Persistence, count: int = 7) -> list[uuid.UUID]:
    """Insert ``count`` QR records and ``count`` template records.

    Each pair shares a design with a random background color. Records are
    titled "QR Code <i>" and "Template <i>".

    Returns:
        Identifiers of the inserted QR records, in insertion order

    Raises:
        StoreFailure: If an insert fails
    """
    qr_ids: list[uuid.UUID] = []
    builder = encode_builder(BuilderModel())
    for i in range(count):
        design = encode_design(DesignModel(background_color=random_color()))
        now = utcnow()

        qr = persistence.insert(
            QRRecord(
                id=uuid.uuid4(),
                title=f"QR Code {i}",
                created=now,
                viewed=now,
                design=design,
                builder=builder,
            )
        )
        qr_ids.append(qr.id)

        persistence.insert(
            TemplateRecord(
                id=uuid.uuid4(),
                title=f"Template {i}",
                created=now,
                viewed=now,
                logo=None,
                design=design,
            )
        )
    return qr_ids


__all__ = ["seed_sample_data"]
