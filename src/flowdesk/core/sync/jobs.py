from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from flowdesk.core.errors import InvalidInput, JobCancelled
from flowdesk.core.queue.handlers import HandlerRegistry, JobContext
from flowdesk.core.store import now_iso, parse_iso

from .audit import OperationAuditLog
from .erp_client import ERPClient
from .keys import canonical_json, derive_idempotency_key
from .orchestrator import SyncOrchestrator

Direction = Literal["to_odoo", "from_odoo", "bidirectional"]

_KEYED_METHODS = frozenset({"create"})

ENTITY_MODELS: dict[str, str] = {
    "employee": "hr.employee",
    "department": "hr.department",
    "invoice": "account.move",
    "expense": "hr.expense",
    "leave_request": "hr.leave",
    "purchase_order": "purchase.order",
}


class RecordSync(BaseModel):
    record_id: str
    odoo_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class SyncEmployeeJob(BaseModel):
    type: Literal["sync_employee"]
    organization_id: str
    employee_id: str
    direction: Direction = "to_odoo"
    odoo_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class SyncInvoiceJob(BaseModel):
    type: Literal["sync_invoice"]
    organization_id: str
    invoice_id: str
    direction: Literal["to_odoo", "from_odoo"] = "to_odoo"
    odoo_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class SyncDepartmentJob(BaseModel):
    type: Literal["sync_department"]
    organization_id: str
    department_id: str
    direction: Direction = "to_odoo"
    odoo_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class BulkSyncEmployeesJob(BaseModel):
    type: Literal["bulk_sync_employees"]
    organization_id: str
    direction: Direction = "to_odoo"
    employees: list[RecordSync] = Field(default_factory=list)


class ApprovalCompletedJob(BaseModel):
    type: Literal["approval_completed"]
    organization_id: str
    request_id: str
    entity_type: str
    entity_id: str


OdooSyncJob = Annotated[
    Union[SyncEmployeeJob, SyncInvoiceJob, SyncDepartmentJob, BulkSyncEmployeesJob, ApprovalCompletedJob],
    Field(discriminator="type"),
]


class DateRange(BaseModel):
    start: datetime
    end: datetime


class GeneratePdfJob(BaseModel):
    type: Literal["generate_pdf"]
    organization_id: str
    report_id: str
    model: str = "account.move"
    domain: list[Any] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class GenerateExcelJob(BaseModel):
    type: Literal["generate_excel"]
    organization_id: str
    report_id: str
    model: str = "account.move"
    domain: list[Any] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class GenerateAuditTrailJob(BaseModel):
    type: Literal["generate_audit_trail"]
    organization_id: str
    date_range: DateRange
    entity_types: list[str] = Field(default_factory=list)


class GenerateCaseReportJob(BaseModel):
    type: Literal["generate_case_report"]
    organization_id: str
    case_id: str
    format: Literal["pdf", "excel"] = "pdf"


ReportsJob = Annotated[
    Union[GeneratePdfJob, GenerateExcelJob, GenerateAuditTrailJob, GenerateCaseReportJob],
    Field(discriminator="type"),
]

_SYNC_ADAPTER: TypeAdapter[Any] = TypeAdapter(OdooSyncJob)
_REPORTS_ADAPTER: TypeAdapter[Any] = TypeAdapter(ReportsJob)


class ReportDescriptor(BaseModel):
    report_type: str
    format: Literal["pdf", "xlsx", "json"]
    row_count: int
    checksum: str
    columns: list[str] = Field(default_factory=list)
    generated_at_iso: str = Field(default_factory=now_iso)


def _parse(adapter: TypeAdapter[Any], payload: dict[str, Any]) -> Any:
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise InvalidInput(f"invalid job payload: {exc.error_count()} error(s)") from exc


def _checksum(rows: list[Any]) -> str:
    return hashlib.sha256(canonical_json(rows).encode("utf-8")).hexdigest()


class SyncJobs:
    """Job handlers for the ``odoo-sync`` and ``reports`` queues."""

    def __init__(self, orchestrator: SyncOrchestrator, erp: ERPClient, audit_log: OperationAuditLog) -> None:
        self.orchestrator = orchestrator
        self.erp = erp
        self.audit_log = audit_log

    def register(self, registry: HandlerRegistry) -> None:
        registry.register("sync_odoo", self.sync_odoo)
        registry.register("generate_report", self.generate_report)

    def _call(
        self,
        organization_id: str,
        operation_type: str,
        model: str,
        method: str,
        args: list[Any],
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        params = {"method": method, "args": args, "kwargs": kwargs or {}}
        # Only record creation is keyed; reads and writes always reach the ERP.
        key = derive_idempotency_key(operation_type, model, params, organization_id) if method in _KEYED_METHODS else None
        return self.orchestrator.execute(
            key,
            lambda: self.erp.call(model, method, args, kwargs or {}, idempotency_key=key),
            operation_type=operation_type,
            model=model,
            method=method,
            request_payload=params,
            organization_id=organization_id,
        )

    def _sync_record(
        self,
        organization_id: str,
        operation_type: str,
        model: str,
        direction: str,
        odoo_id: int | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        outcome: dict[str, Any] = {"model": model, "odoo_id": odoo_id}
        if direction in {"to_odoo", "bidirectional"}:
            if not data:
                raise InvalidInput(f"{operation_type} to_odoo requires data")
            if odoo_id is None:
                outcome["odoo_id"] = self._call(organization_id, operation_type, model, "create", [data])
            else:
                outcome["written"] = self._call(organization_id, operation_type, model, "write", [[odoo_id], data])
        if direction in {"from_odoo", "bidirectional"}:
            if outcome["odoo_id"] is None:
                raise InvalidInput(f"{operation_type} from_odoo requires odoo_id")
            rows = self._call(organization_id, operation_type, model, "read", [[outcome["odoo_id"]]])
            outcome["record"] = rows[0] if isinstance(rows, list) and rows else rows
        return outcome

    def sync_odoo(self, ctx: JobContext) -> dict[str, Any]:
        job = _parse(_SYNC_ADAPTER, ctx.payload)
        ctx.log(f"sync started: {job.type}")

        if isinstance(job, SyncEmployeeJob):
            outcome = self._sync_record(job.organization_id, job.type, "hr.employee", job.direction, job.odoo_id, job.data)
            return {"type": job.type, "employee_id": job.employee_id, **outcome}
        if isinstance(job, SyncInvoiceJob):
            outcome = self._sync_record(job.organization_id, job.type, "account.move", job.direction, job.odoo_id, job.data)
            return {"type": job.type, "invoice_id": job.invoice_id, **outcome}
        if isinstance(job, SyncDepartmentJob):
            outcome = self._sync_record(job.organization_id, job.type, "hr.department", job.direction, job.odoo_id, job.data)
            return {"type": job.type, "department_id": job.department_id, **outcome}
        if isinstance(job, BulkSyncEmployeesJob):
            synced: list[dict[str, Any]] = []
            for record in job.employees:
                if ctx.cancel_requested():
                    raise JobCancelled(f"bulk sync cancelled after {len(synced)} of {len(job.employees)} employees")
                outcome = self._sync_record(
                    job.organization_id, job.type, "hr.employee", job.direction, record.odoo_id, record.data
                )
                synced.append({"employee_id": record.record_id, **outcome})
            return {"type": job.type, "synced": len(synced), "records": synced}

        model = ENTITY_MODELS.get(job.entity_type)
        if model is None:
            raise InvalidInput(f"no ERP model mapped for entity type {job.entity_type}")
        try:
            odoo_id = int(job.entity_id)
        except ValueError as exc:
            raise InvalidInput(f"entity id {job.entity_id} is not an ERP record id") from exc
        written = self._call(
            job.organization_id,
            job.type,
            model,
            "write",
            [[odoo_id], {"x_flowdesk_approval_state": "approved", "x_flowdesk_request_id": job.request_id}],
        )
        return {"type": job.type, "request_id": job.request_id, "model": model, "odoo_id": odoo_id, "written": written}

    def generate_report(self, ctx: JobContext) -> dict[str, Any]:
        job = _parse(_REPORTS_ADAPTER, ctx.payload)
        ctx.log(f"report started: {job.type}")

        if isinstance(job, GenerateAuditTrailJob):
            start, end = job.date_range.start, job.date_range.end
            rows = [
                entry.model_dump(mode="json")
                for entry in self.audit_log.list(organization_id=job.organization_id, limit=100_000)
                if _within(entry.started_at_iso, start, end)
                and (not job.entity_types or entry.model in {ENTITY_MODELS.get(kind) for kind in job.entity_types})
            ]
            descriptor = ReportDescriptor(
                report_type=job.type,
                format="json",
                row_count=len(rows),
                checksum=_checksum(rows),
                columns=sorted(rows[0]) if rows else [],
            )
            return descriptor.model_dump(mode="json")

        if isinstance(job, GenerateCaseReportJob):
            model, domain, fields = "project.task", [["x_flowdesk_case_id", "=", job.case_id]], []
            report_format = "pdf" if job.format == "pdf" else "xlsx"
            report_ref = job.case_id
        else:
            model, domain, fields = job.model, job.domain, job.fields
            report_format = "pdf" if isinstance(job, GeneratePdfJob) else "xlsx"
            report_ref = job.report_id

        rows = self._call(
            job.organization_id,
            job.type,
            model,
            "search_read",
            [domain],
            {"fields": fields} if fields else {},
        )
        rows = rows if isinstance(rows, list) else []
        ctx.log("report data loaded", rows=len(rows), report=report_ref)
        descriptor = ReportDescriptor(
            report_type=job.type,
            format=report_format,
            row_count=len(rows),
            checksum=_checksum(rows),
            columns=fields or (sorted(rows[0]) if rows and isinstance(rows[0], dict) else []),
        )
        return descriptor.model_dump(mode="json")


def _within(value: str, start: datetime, end: datetime) -> bool:
    parsed = parse_iso(value)
    if parsed is None:
        return False
    start = start if start.tzinfo else start.replace(tzinfo=parsed.tzinfo)
    end = end if end.tzinfo else end.replace(tzinfo=parsed.tzinfo)
    return start <= parsed <= end
