"""Merge several draft invoices for one client into a single consolidated invoice."""

import warnings
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Sequence

import structlog

from backend.app.core.errors import ReconciliationWarning, ValidationError
from backend.app.models.invoice import Invoice
from backend.app.services.billing_state import to_decimal
from backend.app.services.line_items import (
    copy_line_item,
    line_items_total,
    money,
    source_label,
    synthesize_line_items,
    totals_match,
)
from backend.app.services.reference_numbers import consolidated_invoice_number
from backend.app.services.store import BillingStore

LOGGER = structlog.get_logger(__name__)


@dataclass
class ConsolidationResult:
    success: bool
    consolidated_invoice: Invoice | None = None
    error: str | None = None
    warnings: List[str] = field(default_factory=list)


def validate_sources(invoice_ids: Sequence[int], invoices: Sequence[Invoice]) -> None:
    """Raise ValidationError naming the first consolidation rule the sources break."""
    if len(invoice_ids) < 2:
        raise ValidationError("At least 2 invoices are required for consolidation")
    if len(invoices) != len(set(invoice_ids)):
        raise ValidationError("Some invoices could not be found")

    client_ids = {inv.client_id for inv in invoices}
    if len(client_ids) > 1:
        raise ValidationError("All invoices must be from the same client")

    non_draft = [inv for inv in invoices if inv.status != "draft"]
    if non_draft:
        statuses = ", ".join(dict.fromkeys(inv.status for inv in non_draft))
        raise ValidationError(f"Only draft invoices can be consolidated. Found invoices with status: {statuses}")

    already = [inv for inv in invoices if inv.consolidated_into is not None]
    if already:
        numbers = ", ".join(inv.invoice_number or str(inv.id) for inv in already)
        raise ValidationError(f"These invoices are already consolidated: {numbers}")

    merged = [inv for inv in invoices if inv.is_consolidated_invoice]
    if merged:
        numbers = ", ".join(inv.invoice_number or str(inv.id) for inv in merged)
        raise ValidationError(f"Cannot re-consolidate consolidated invoices: {numbers}. Please select original invoices only.")


def consolidate_invoices(
    store: BillingStore,
    invoice_ids: Sequence[int],
    owner_id: int,
    number_generator: Callable[[], str] = consolidated_invoice_number,
) -> ConsolidationResult:
    ids = list(dict.fromkeys(invoice_ids))
    try:
        invoices = store.get_invoices(ids, owner_id=owner_id) if len(ids) >= 2 else []
        validate_sources(ids, invoices)
    except ValidationError as exc:
        LOGGER.info("consolidation_rejected", invoice_ids=ids, reason=str(exc))
        return ConsolidationResult(success=False, error=str(exc))
    except Exception as exc:
        LOGGER.error("consolidation_failed", invoice_ids=ids, stage="fetch", error=str(exc))
        return ConsolidationResult(success=False, error=str(exc) or "Failed to consolidate invoices")

    subtotal = money(sum((to_decimal(inv.subtotal) for inv in invoices), Decimal("0")))
    tax_amount = money(sum((to_decimal(inv.tax_amount) for inv in invoices), Decimal("0")))
    total = money(sum((to_decimal(inv.total) for inv in invoices), Decimal("0")))
    sources = {
        inv.id: {"label": source_label(inv), "total": money(inv.total), "project_id": inv.project_id}
        for inv in invoices
    }

    target_id = None
    try:
        consolidated = store.insert_invoice(
            owner_id=owner_id,
            client_id=invoices[0].client_id,
            invoice_number=number_generator(),
            status="draft",
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=total,
            consolidated_from=ids,
        )
        target_id = consolidated.id
        LOGGER.info("consolidated_invoice_created", invoice_id=target_id, source_ids=ids, total=str(total))

        existing = store.list_line_items(ids)
        with_items = {item.invoice_id for item in existing}

        synthetic: List[dict] = []
        for source_id in ids:
            source = sources[source_id]
            if source_id in with_items or source["total"] <= 0:
                continue
            billed_tasks = store.list_billed_tasks(source["project_id"]) if source["project_id"] else []
            rows = synthesize_line_items(
                target_id,
                source["total"],
                source["label"],
                billed_tasks,
                start_sort_order=len(existing) + len(synthetic),
            )
            LOGGER.info(
                "line_items_synthesized",
                source_invoice_id=source_id,
                count=len(rows),
                per_task=bool(billed_tasks) and len(rows) == len(billed_tasks),
            )
            synthetic.extend(rows)

        copied = [
            copy_line_item(item, target_id, sources[item.invoice_id]["label"], index)
            for index, item in enumerate(existing)
        ]
        new_rows = copied + synthetic
        store.insert_line_items(new_rows)

        notes = []
        inserted_total = line_items_total(new_rows)
        if not totals_match(inserted_total, total):
            message = (
                f"Consolidation line items total (${inserted_total}) differs from invoice total (${total}). "
                f"Gap: ${money(total - inserted_total)}"
            )
            LOGGER.warning("consolidation_totals_mismatch", invoice_id=target_id, detail=message)
            warnings.warn(message, ReconciliationWarning, stacklevel=2)
            notes.append(message)

        store.update_invoices(ids, consolidated_into=target_id, status="consolidated")
        LOGGER.info("invoices_consolidated", invoice_id=target_id, source_ids=ids)
        return ConsolidationResult(success=True, consolidated_invoice=store.get_invoice(target_id), warnings=notes)
    except Exception as exc:
        # No compensation: a created consolidated invoice is left for repair
        LOGGER.error(
            "consolidation_failed",
            invoice_ids=ids,
            consolidated_invoice_id=target_id,
            error=str(exc),
        )
        return ConsolidationResult(success=False, error=str(exc) or "Failed to consolidate invoices")
