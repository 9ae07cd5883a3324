"""Record models - immutable entity snapshots read through the Context Store.

This module defines the entities a case page is assembled from:
- CaseSnapshot: the case itself, point-in-time
- Account: client / location / vendor accounts referenced by the case
- Contact, Asset, Task, WorkOrder, Quote: related records

All models are frozen. The Context Store replaces cached instances wholesale,
so nothing downstream ever observes a partially updated record.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field


# ============================================================
# Enumerations
# ============================================================

class EntityType(str, Enum):
    """Entity types served by the Context Store."""

    CASE = "case"
    ACCOUNT = "account"
    CONTACT = "contact"
    ASSET = "asset"
    TASK = "task"
    WORK_ORDER = "work_order"
    QUOTE = "quote"


class AccountRole(str, Enum):
    """Which side of the case an account sits on."""

    CLIENT = "client"
    LOCATION = "location"
    VENDOR = "vendor"


class ApprovalStatus(str, Enum):
    """Approval state recorded on a case."""

    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CLOSED_CASE_STATUSES = frozenset({"Closed", "Cancelled", "Resolved"})


class RecordModel(BaseModel):
    """Base for all entity snapshots: frozen, unknown keys ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Record identifier")


# ============================================================
# Case
# ============================================================

class CaseSnapshot(RecordModel):
    """
    One case at a point in time.

    Foreign keys point at related records; the *_ids tuples list child
    records (tasks, quotes, work orders, related cases) the persistence layer
    associates with the case.
    """

    case_number: Optional[str] = None
    status: str = Field(default="New", description="Case lifecycle status")
    record_type: Optional[str] = None

    # Classification
    case_type: Optional[str] = None
    case_sub_type: Optional[str] = None
    case_reason: Optional[str] = None
    service_type: Optional[str] = None
    priority: Optional[str] = None

    # Approval inputs
    value: Optional[Decimal] = Field(default=None, description="Monetary value of the request")
    risk_flag: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.NONE

    # Foreign keys
    client_id: Optional[str] = None
    location_id: Optional[str] = None
    vendor_id: Optional[str] = None
    contact_id: Optional[str] = None
    asset_id: Optional[str] = None
    work_order_id: Optional[str] = None
    quote_id: Optional[str] = None
    parent_id: Optional[str] = None

    # Child record ids
    task_ids: Tuple[str, ...] = ()
    related_case_ids: Tuple[str, ...] = ()
    quote_ids: Tuple[str, ...] = ()
    work_order_ids: Tuple[str, ...] = ()

    # Scheduling
    created_at: Optional[datetime] = None
    service_date: Optional[date] = None
    sla_due_date: Optional[date] = None
    sla_override_reason: Optional[str] = None
    sla_override_comment: Optional[str] = None

    # Customer references
    customer_po: Optional[str] = Field(default=None, description="Purchase-order number")
    profile_number: Optional[str] = None
    project_site_information: Optional[str] = None
    chargeable: Optional[str] = None
    company_category: Optional[str] = None

    # Free text
    subject: Optional[str] = None
    description: Optional[str] = None
    required_information: Optional[str] = None

    @property
    def is_open(self) -> bool:
        """A case is open until it reaches a closed status."""
        return self.status not in CLOSED_CASE_STATUSES

    def account_ids(self) -> Dict[AccountRole, Optional[str]]:
        return {
            AccountRole.CLIENT: self.client_id,
            AccountRole.LOCATION: self.location_id,
            AccountRole.VENDOR: self.vendor_id,
        }


# ============================================================
# Related records
# ============================================================

class Account(RecordModel):
    name: str = ""
    role: Optional[AccountRole] = None
    account_number: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True


class Contact(RecordModel):
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    account_id: Optional[str] = None


class Asset(RecordModel):
    name: str = ""
    location_id: Optional[str] = None
    equipment_type: Optional[str] = None
    material_type: Optional[str] = None
    status: Optional[str] = None


class Task(RecordModel):
    subject: str = ""
    status: str = "Open"
    case_id: Optional[str] = None
    due_date: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.status.lower() not in {"completed", "closed", "cancelled"}


class WorkOrder(RecordModel):
    number: Optional[str] = None
    status: Optional[str] = None
    case_id: Optional[str] = None


class Quote(RecordModel):
    name: str = ""
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    case_id: Optional[str] = None


ENTITY_MODELS: Dict[EntityType, Type[RecordModel]] = {
    EntityType.CASE: CaseSnapshot,
    EntityType.ACCOUNT: Account,
    EntityType.CONTACT: Contact,
    EntityType.ASSET: Asset,
    EntityType.TASK: Task,
    EntityType.WORK_ORDER: WorkOrder,
    EntityType.QUOTE: Quote,
}


def parse_entity(entity_type: EntityType, payload: dict) -> RecordModel:
    """Validate a raw persistence payload into the entity's model."""
    return ENTITY_MODELS[entity_type].model_validate(payload)
