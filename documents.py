"""Document shapes stored in the terminal's document store.

Every document is a JSON object tagged by ``type``. The registry below lists
the fields each known type must carry; unknown types are accepted so that
newer documents replicated from the central store are not rejected.
"""
from typing import Any, Dict, List, Optional

from pos_errors import ValidationError

ITEM = "Item"
PRICE_LIST_ENTRY = "ItemPriceList"
CUSTOMER = "Customer"
POS_PROFILE = "POSProfile"
POS_INVOICE = "POSInvoice"

STATUS_DRAFT = "Draft"
STATUS_SUBMITTED = "Submitted"
INVOICE_STATUSES = (STATUS_DRAFT, STATUS_SUBMITTED)

REQUIRED_FIELDS: Dict[str, tuple] = {
    ITEM: ("item_name",),
    PRICE_LIST_ENTRY: ("item", "priceList", "Rate"),
    CUSTOMER: ("customer_name",),
    POS_PROFILE: ("erpnext_id", "price_list_id"),
    POS_INVOICE: ("status", "items", "customer_id"),
}

# Fields only replication may change once an invoice is Submitted.
REPLICATION_FIELDS = ("_rev", "_revisions", "_conflicts", "synced_utc", "erp_docname")


def doc_type(doc: Dict[str, Any]) -> Optional[str]:
    value = doc.get("type")
    return str(value) if value else None


def validate_doc(doc: Any) -> Dict[str, Any]:
    """Check a document before it is written; raises ValidationError."""
    if not isinstance(doc, dict):
        raise ValidationError("Document must be an object", rule="doc_shape")
    doc_id = doc.get("_id")
    if not doc_id or not isinstance(doc_id, str):
        raise ValidationError("Document is missing _id", rule="doc_id")
    if doc.get("_deleted"):
        return doc
    kind = doc_type(doc)
    if not kind:
        raise ValidationError(f"Document {doc_id} has no type", rule="doc_type")
    missing = [f for f in REQUIRED_FIELDS.get(kind, ()) if doc.get(f) is None]
    if missing:
        raise ValidationError(
            f"{kind} {doc_id} is missing {', '.join(missing)}", rule="doc_fields"
        )
    if kind == POS_INVOICE:
        _validate_invoice(doc)
    return doc


def _validate_invoice(doc: Dict[str, Any]) -> None:
    status = doc.get("status")
    if status not in INVOICE_STATUSES:
        raise ValidationError(f"Unknown invoice status {status!r}", rule="invoice_status")
    if status == STATUS_SUBMITTED and not doc.get("erpnext_id"):
        raise ValidationError("Submitted invoice has no invoice number", rule="invoice_number")
    if status == STATUS_DRAFT and doc.get("erpnext_id"):
        raise ValidationError("Draft invoice cannot carry an invoice number", rule="invoice_number")
    if not isinstance(doc.get("items"), list):
        raise ValidationError("Invoice items must be a list", rule="doc_fields")


def check_submitted_unchanged(stored: Dict[str, Any], incoming: Dict[str, Any]) -> None:
    """Refuse local edits to a Submitted invoice beyond replication metadata."""
    if stored.get("type") != POS_INVOICE or stored.get("status") != STATUS_SUBMITTED:
        return
    if incoming.get("_deleted"):
        raise ValidationError("Submitted invoices cannot be deleted", rule="invoice_immutable")
    keys = (set(stored) | set(incoming)) - set(REPLICATION_FIELDS)
    changed: List[str] = sorted(k for k in keys if stored.get(k) != incoming.get(k))
    if changed:
        raise ValidationError(
            f"Submitted invoice {stored.get('_id')} is immutable (changed: {', '.join(changed)})",
            rule="invoice_immutable",
        )


def split_doc_id(doc_id: str) -> List[str]:
    """Split a ``Type::Store::Terminal::Number`` style id."""
    return (doc_id or "").split("::")


def short_name(doc_id: Optional[str]) -> str:
    """Last segment of a ``::`` separated id (the human readable part)."""
    if not doc_id:
        return ""
    return split_doc_id(doc_id)[-1]
