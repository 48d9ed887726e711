from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row_number, "message": self.message}


@dataclass(frozen=True)
class CandidateRow:
    row_number: int
    int_nr: str | None
    payload: dict[str, Any]


def _get(row: dict[str, str], *names: str) -> str:
    for n in names:
        if n in row and row[n] is not None:
            return str(row[n]).strip()
    return ""


def _json_list(raw: str, column: str) -> list[Any]:
    if not raw:
        raise ValueError(f"{column} is required.")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{column} is not valid JSON: {e.msg}") from e
    if not isinstance(value, list):
        raise ValueError(f"{column} must be a JSON array.")
    return value


def _delimiter(text: str) -> str:
    header = text.split("\n", 1)[0]
    return ";" if header.count(";") > header.count(",") else ","


def parse_customer_csv(file_bytes: bytes) -> tuple[list[CandidateRow], list[CsvRowError]]:
    """
    Parse a customer CSV export.

    Expected headers (a few common spellings are accepted):
    - intNr (blank = assign the next free number)
    - type (DEALER, COMPANY, PRIVATE)
    - contactPersons (JSON array of contact objects)
    - addresses (JSON array of address objects)

    Field-level validation is left to the customer service; this only checks the shape.

    Returns:
      (rows, errors)
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text), delimiter=_delimiter(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")

    rows: list[CandidateRow] = []
    errors: list[CsvRowError] = []

    for idx, raw in enumerate(reader, start=2):  # 1 = header
        # Skip fully empty rows
        if not raw or all((v or "").strip() == "" for v in raw.values() if isinstance(v, str)):
            continue

        int_nr = _get(raw, "intNr", "IntNr", "int_nr", "Int Nr") or None
        ctype = _get(raw, "type", "Type")
        try:
            contacts = _json_list(_get(raw, "contactPersons", "contact_persons", "Contact Persons"), "contactPersons")
            addresses = _json_list(_get(raw, "addresses", "Addresses"), "addresses")
        except ValueError as e:
            errors.append(CsvRowError(idx, str(e)))
            continue

        rows.append(
            CandidateRow(
                row_number=idx,
                int_nr=int_nr,
                payload={"type": ctype, "contactPersons": contacts, "addresses": addresses},
            )
        )

    return rows, errors
