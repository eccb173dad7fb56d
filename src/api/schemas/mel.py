from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import Field, field_validator

from src.api.schemas.common import ApiModel

AlertStatus = Literal["ativo", "resolvido"]
EquipmentIdValue = Union[int, str]


class EquipmentGroupOut(ApiModel):
    """A built-in equipment group."""

    key: str = Field(..., description="Stable lowercase-hyphenated group key.")
    name: str = Field(..., description="Display name.")
    patterns: List[str] = Field(default_factory=list, description="Case-insensitive substring patterns.")


class EquipmentGroupListResponse(ApiModel):
    items: List[EquipmentGroupOut]
    total: int = Field(..., ge=0)


class EquipmentUnitOut(ApiModel):
    """One equipment unit with its availability."""

    id: Optional[EquipmentIdValue] = Field(default=None, description="Upstream equipment id.")
    tag: str = Field("", description="Site asset code.")
    name: str = Field("", description="Equipment name.")
    model: str = Field("", description="Model.")
    manufacturer: str = Field("", description="Manufacturer.")
    sector: str = Field("", description="Sector name as reported upstream.")
    status: str = Field("", description="Operational status as reported upstream.")
    available: bool = Field(..., description="False when status-flagged or blocked by an open service order.")
    unavailable_reason: Optional[str] = Field(
        default=None, description="status|service_order when unavailable.", alias="unavailableReason"
    )


class AvailabilityOut(ApiModel):
    """Availability of one equipment group in one sector."""

    sector_id: int = Field(..., alias="sectorId")
    sector_name: str = Field(..., alias="sectorName")
    group_key: str = Field(..., alias="groupKey")
    group_name: str = Field(..., alias="groupName")
    total: int = Field(..., ge=0)
    unavailable: int = Field(..., ge=0)
    available: int = Field(..., ge=0)
    minimum: int = Field(..., ge=0, description="Configured minimum quantity.")
    in_alert: bool = Field(..., description="Active rule below its minimum.", alias="inAlert")
    linking_degraded: bool = Field(
        False, description="Service orders came from the summarized feed and cannot block units.", alias="linkingDegraded"
    )


class SectorGroupOut(ApiModel):
    """Counts for one group present in a sector (or configured for it)."""

    group_key: str = Field(..., alias="groupKey")
    group_name: str = Field(..., alias="groupName")
    is_custom: bool = Field(False, alias="isCustom")
    equipment_count: int = Field(..., ge=0, alias="equipmentCount")
    unavailable: int = Field(..., ge=0)
    available: int = Field(..., ge=0)
    minimum: Optional[int] = Field(default=None, ge=0, description="Configured minimum; null without a rule.")
    in_alert: bool = Field(False, alias="inAlert")
    rule_id: Optional[str] = Field(default=None, alias="ruleId")
    active: Optional[bool] = Field(default=None, description="Rule active flag; null without a rule.")
    justification: Optional[str] = None
    equipment: List[EquipmentUnitOut] = Field(default_factory=list)


class SectorGroupsResponse(ApiModel):
    sector_id: int = Field(..., alias="sectorId")
    sector_name: str = Field(..., alias="sectorName")
    items: List[SectorGroupOut]
    total: int = Field(..., ge=0)
    in_alert: int = Field(0, ge=0, description="Number of items in alert.", alias="inAlert")
    linking_degraded: bool = Field(False, alias="linkingDegraded")
    warnings: List[str] = Field(default_factory=list)


class RuleIn(ApiModel):
    """One rule in a batch upsert for a sector."""

    group_key: str = Field(..., min_length=1, alias="groupKey")
    group_name: Optional[str] = Field(default=None, alias="groupName")
    minimum_quantity: int = Field(..., ge=0, alias="minimumQuantity")
    group_pattern: Optional[str] = Field(
        default=None, description="Pattern string override (comma/pipe separated).", alias="groupPattern"
    )
    equipment_ids: Optional[List[EquipmentIdValue]] = Field(
        default=None, description="Explicit equipment ids; makes this a custom group.", alias="equipmentIds"
    )
    justification: Optional[str] = None

    @field_validator("group_key")
    @classmethod
    def _strip_key(cls, v: str) -> str:
        return v.strip()


class RulesUpsertRequest(ApiModel):
    sector_name: Optional[str] = Field(default=None, alias="sectorName")
    rules: List[RuleIn] = Field(..., min_length=1)


class RuleUpdate(ApiModel):
    """Partial update of a rule."""

    group_name: Optional[str] = Field(default=None, alias="groupName")
    minimum_quantity: Optional[int] = Field(default=None, ge=0, alias="minimumQuantity")
    active: Optional[bool] = None
    group_pattern: Optional[str] = Field(default=None, alias="groupPattern")
    equipment_ids: Optional[List[EquipmentIdValue]] = Field(default=None, alias="equipmentIds")
    justification: Optional[str] = None


class RuleOut(ApiModel):
    id: str
    sector_id: int = Field(..., alias="sectorId")
    sector_name: str = Field(..., alias="sectorName")
    group_key: str = Field(..., alias="equipmentGroupKey")
    group_name: str = Field(..., alias="equipmentGroupName")
    minimum_quantity: int = Field(..., ge=0, alias="minimumQuantity")
    active: bool
    is_custom: bool = Field(False, alias="isCustom")
    group_pattern: Optional[str] = Field(default=None, alias="groupPattern")
    justification: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class RuleListResponse(ApiModel):
    items: List[RuleOut]
    total: int = Field(..., ge=0)


class AlertOut(ApiModel):
    id: str
    sector_id: int = Field(..., alias="sectorId")
    sector_name: str = Field(..., alias="sectorName")
    group_key: str = Field(..., alias="equipmentGroupKey")
    group_name: str = Field(..., alias="equipmentGroupName")
    rule_id: Optional[str] = Field(default=None, alias="sectorMelId")
    current_available: int = Field(..., alias="currentAvailable")
    minimum_quantity: int = Field(..., alias="minimumQuantity")
    total_in_sector: int = Field(..., alias="totalInSector")
    unavailable_count: int = Field(..., alias="unavailableCount")
    status: AlertStatus
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")


class AlertListResponse(ApiModel):
    items: List[AlertOut]
    total: int = Field(..., ge=0)
    active: int = Field(..., ge=0)
    resolved: int = Field(..., ge=0)


class SweepReportOut(ApiModel):
    """Outcome of a reconciliation sweep."""

    rules_evaluated: int = Field(0, alias="rulesEvaluated")
    alerts_created: int = Field(0, alias="alertsCreated")
    alerts_updated: int = Field(0, alias="alertsUpdated")
    alerts_resolved: int = Field(0, alias="alertsResolved")
    orphans_resolved: int = Field(0, alias="orphansResolved")
    failed_rules: List[str] = Field(default_factory=list, alias="failedRules")
    linking_degraded: bool = Field(False, alias="linkingDegraded")
    aborted: bool = False
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime = Field(..., alias="startedAt")
    finished_at: datetime = Field(..., alias="finishedAt")


class RuleMutationResponse(ApiModel):
    """Rules written by a mutation plus the sweep it triggered."""

    items: List[RuleOut] = Field(default_factory=list)
    total: int = Field(0, ge=0)
    sweep: Optional[SweepReportOut] = Field(
        default=None, description="Null when the follow-up sweep could not read the rule store."
    )


class RuleDeleteResponse(ApiModel):
    deleted: int = Field(..., ge=0)
    sweep: Optional[SweepReportOut] = None


class SectorMappingIn(ApiModel):
    system_sector_name: Optional[str] = Field(default=None, alias="systemSectorName")
    effort_sector_name: Optional[str] = Field(default=None, alias="effortSectorName")
    effort_sector_id: Optional[int] = Field(default=None, alias="effortSectorId")
    active: bool = True


class SectorMappingOut(SectorMappingIn):
    sector_id: int = Field(..., alias="sectorId")


class SectorMappingListResponse(ApiModel):
    items: List[SectorMappingOut]
    total: int = Field(..., ge=0)
