"""
Voucher documents exchanged with the cloud accounting APIs.

A line item arrives with three routing fields (``idempotencyKey``,
``region``, ``vouchertype``) and an open set of business fields that
are passed through to the cloud untouched.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

from .errors import MissingIdempotencyKey
from .numbering import format_voucher_no

ROUTING_FIELDS = ("idempotencyKey", "region", "vouchertype")
DEFAULT_BRANCH = "AirIQ Nepal"


class VoucherLineItem(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    idempotency_key: str = Field(alias="idempotencyKey", min_length=1)
    region: str = "nepal"
    voucher_type: str = Field(default="Sales", alias="vouchertype")

    @classmethod
    def from_payload(
        cls, raw: Any, region: str = "nepal", voucher_type: str = "Sales"
    ) -> "VoucherLineItem":
        """
        Build a line item from an inbound JSON object.

        Only the routing fields are validated. Missing region/vouchertype
        fall back to the given defaults.

        Raises:
            MissingIdempotencyKey: If the object has no usable key
        """
        if not isinstance(raw, dict):
            raise MissingIdempotencyKey("voucher item must be a JSON object")
        key = str(raw.get("idempotencyKey") or "").strip()
        if not key:
            raise MissingIdempotencyKey()

        data = dict(raw)
        data["idempotencyKey"] = key
        data["region"] = str(raw.get("region") or region)
        data["vouchertype"] = str(raw.get("vouchertype") or voucher_type)
        return cls.model_validate(data)

    def business_fields(self) -> dict[str, Any]:
        """Everything except the routing fields, in arrival order."""
        return dict(self.model_extra or {})

    def to_wire(self, voucher_no: str) -> dict[str, Any]:
        """The document the cloud receives: business fields plus ``voucherno``."""
        document = self.business_fields()
        document.pop("voucherno", None)
        document["voucherno"] = voucher_no
        return document


@dataclass(frozen=True)
class CandidateAllocation:
    """A counter value read under the lock but not yet committed."""

    next: int
    formatted: str

    @classmethod
    def after(cls, current: int, prefix: str) -> "CandidateAllocation":
        next_no = current + 1
        return cls(next=next_no, formatted=format_voucher_no(next_no, prefix))


@dataclass
class SubmissionResult:
    """Outcome for one inbound line item."""

    idempotency_key: str
    ok: bool
    voucher_no: Optional[str] = None
    message: Optional[str] = None
    # True when the number came from the ledger instead of a new allocation
    reused: bool = False

    @classmethod
    def success(cls, idempotency_key: str, voucher_no: str, reused: bool = False):
        return cls(idempotency_key, True, voucher_no=voucher_no, reused=reused)

    @classmethod
    def failure(cls, idempotency_key: str, message: str):
        return cls(idempotency_key, False, message=message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"idempotencyKey": self.idempotency_key, "ok": self.ok}
        if self.ok:
            result["voucherno"] = self.voucher_no
            result["reused"] = self.reused
        else:
            result["message"] = self.message
        return result


# --- Builders from source records -------------------------------------------

def _money(*factors: Any) -> str:
    total = Decimal("1")
    for f in factors:
        total *= Decimal(str(f or 0))
    return str(total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _voucher_date(record: dict) -> str:
    raw = str(record.get("SaleEntryDate") or "")
    return raw.split("T")[0].replace("-", "/")


def _opt(value: Any) -> str:
    return "" if value is None else str(value)


def sale_idempotency_key(record: dict, region: str = "nepal", voucher_type: str = "Sales") -> str:
    """
    Derive a stable idempotency key for a source record.

    Pulling the same record twice yields the same key, so a resubmission
    short-circuits to the ledger instead of allocating a second number.
    """
    if record.get("InvoiceNo") not in (None, ""):
        return f"{region}:{voucher_type}:{record['InvoiceNo']}"
    if record.get("SaleID") not in (None, ""):
        return f"{region}:{voucher_type}:{_opt(record.get('Prefix'))}-{record['SaleID']}"
    raise ValueError("source record has neither InvoiceNo nor SaleID")


def build_sales_item(record: dict, rate: float, branch_name: str = DEFAULT_BRANCH) -> dict:
    """Build a Nepal Sales line item (without voucherno) from a source record."""
    amount = _money(record.get("FinalRate"), record.get("pax"), rate)
    address = (
        f"{_opt(record.get('Add1'))}, {_opt(record.get('Add2'))}, "
        f"{_opt(record.get('CityName'))} - {_opt(record.get('Pin'))}"
    )
    sector = f"{_opt(record.get('FromSector'))} {_opt(record.get('ToSectors'))}"
    return {
        "idempotencyKey": sale_idempotency_key(record),
        "region": "nepal",
        "vouchertype": "Sales",
        "branchName": branch_name,
        "voucherdate": _voucher_date(record),
        "narration": (
            f"{_opt(record.get('Prefix'))}-{_opt(record.get('SaleID'))}, "
            f"PNR :- {_opt(record.get('Pnr'))}, PAX :- {_opt(record.get('pax'))}, "
            f"AIRLINE_CODE :- {_opt(record.get('AirlineCode'))}, SECTOR :- {sector}"
        ),
        "ledgerAllocation": [
            {
                "lineno": 1,
                "ledgerName": record.get("AccountName"),
                "ledgerAddress": address,
                "amount": amount,
                "drCr": "dr",
                "description": [],
            },
            {
                "lineno": 2,
                "ledgerName": "Domestic Base Fare",
                "amount": amount,
                "drCr": "cr",
                "description": [_opt(record.get("AirlineCode")), "Sector", sector],
            },
        ],
    }


def build_purchase_voucher(
    record: dict, rate: float, prefix: str = "AQNP", branch_name: str = DEFAULT_BRANCH
) -> dict:
    """
    Build a Nepal Purchase document from a source record.

    Purchases reuse the source invoice number, so there is no counter
    and no idempotency ledger on this path.
    """
    invoice_no = record.get("InvoiceNo")
    if invoice_no in (None, ""):
        raise ValueError("Purchase record has no InvoiceNo to number it by")
    amount = _money(record.get("FinalRate"), record.get("pax"), rate)
    return {
        "branchName": branch_name,
        "vouchertype": "Purchase",
        "voucherno": f"{prefix}/{invoice_no}",
        "voucherdate": _voucher_date(record),
        "narration": (
            f"{_opt(record.get('Prefix'))}-{_opt(record.get('SaleID'))}, "
            f"PNR :- {_opt(record.get('Pnr'))}, PAX :- {_opt(record.get('pax'))}"
        ),
        "ledgerAllocation": [
            {
                "lineno": 1,
                "ledgerName": "Air IQ",
                "ledgerAddress": "Sevoke Road, Siliguri, West Bengal - 734001",
                "amount": amount,
                "drCr": "cr",
                "description": [],
            },
            {
                "lineno": 2,
                "ledgerName": "Domestic Base Fare Purchase",
                "amount": amount,
                "drCr": "dr",
                "description": [],
            },
        ],
    }
