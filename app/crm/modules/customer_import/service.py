from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.crm.audit import record_event
from app.crm.db import commit
from app.crm.errors import ConflictError, ValidationError
from app.crm.models import User
from app.crm.modules.customer_import.parsers import CandidateRow, CsvRowError
from app.crm.modules.customers.service import DEFAULT_INT_NR_RETRIES, create_customer, find_customer_by_int_nr

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    imported: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[CsvRowError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "msg": "Customers imported successfully",
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "importedCount": len(self.imported),
            "skippedCount": len(self.skipped),
        }


def import_customers(
    s: Session,
    rows: list[CandidateRow],
    *,
    user: User | None,
    parse_errors: list[CsvRowError] | None = None,
    max_retries: int = DEFAULT_INT_NR_RETRIES,
) -> ImportResult:
    """
    Create-if-new, else skip, one row at a time.

    Each imported row is committed on its own, so a bad row never takes the
    rest of the batch down with it. Rows whose intNr already exists are skipped.
    """
    result = ImportResult(errors=list(parse_errors or []))

    for row in rows:
        if row.int_nr and find_customer_by_int_nr(s, row.int_nr) is not None:
            result.skipped.append(row.int_nr)
            continue
        try:
            c = create_customer(s, row.payload, user=user, int_nr=row.int_nr, max_retries=max_retries)
            commit(s, "customer.import.row")
        except ValidationError as e:
            s.rollback()
            result.errors.append(CsvRowError(row.row_number, str(e)))
            continue
        except ConflictError:
            s.rollback()
            if row.int_nr:
                # Inserted by someone else between the lookup and our write.
                result.skipped.append(row.int_nr)
                continue
            raise
        result.imported.append(c.int_nr)

    record_event(
        s,
        actor=user,
        action="customer.import",
        entity_type="Customer",
        metadata={
            "imported": result.imported,
            "skipped": result.skipped,
            "errors": len(result.errors),
        },
    )
    commit(s, "customer.import")
    logger.info(
        "Customer import finished: imported=%d skipped=%d errors=%d",
        len(result.imported),
        len(result.skipped),
        len(result.errors),
    )
    return result
