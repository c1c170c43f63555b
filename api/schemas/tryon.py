from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TryOnCreateRequest(CamelModel):
    product_id: str = Field("", alias="productId")
    product_title: str = Field("", alias="productTitle")
    product_image: str = Field("", alias="productImage")
    user_photo: Optional[str] = Field(None, alias="userPhoto")
    preset_image_id: Optional[str] = Field(
        None,
        alias="presetImageId",
        validation_alias=AliasChoices("presetImageId", "cannedImageId", "preset_image_id"),
    )


class TryOnResponse(CamelModel):
    success: bool = True
    request_id: UUID = Field(alias="requestId")
    result_image: str = Field(alias="resultImage")
    cached: bool = False
    attempts: int = 0


class TryOnErrorResponse(CamelModel):
    success: bool = False
    code: str
    error: str
    retryable: bool = False
    request_id: Optional[str] = Field(None, alias="requestId")


class PresetEntry(CamelModel):
    id: str
    name: str
    image_url: str = Field(alias="imageUrl")
    gender: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class PresetListResponse(CamelModel):
    success: bool = True
    images: List[PresetEntry] = Field(default_factory=list)


class StoreStatsResponse(CamelModel):
    success: bool = True
    stats: Dict[str, Any] = Field(default_factory=dict)
    usage: Dict[str, Any] = Field(default_factory=dict)
    cache: Dict[str, int] = Field(default_factory=dict)


class RequestSummary(CamelModel):
    id: UUID
    product_id: str = Field(alias="productId")
    product_title: str = Field(alias="productTitle")
    status: str
    cached: bool
    attempts: int
    error_code: Optional[str] = Field(None, alias="errorCode")
    result_image: Optional[str] = Field(None, alias="resultImage")
    created_at: str = Field(alias="createdAt")


class RequestListResponse(CamelModel):
    requests: List[RequestSummary] = Field(default_factory=list)
    total: int = 0


class ProductToggleRequest(CamelModel):
    enabled: bool


class ProductToggleResponse(CamelModel):
    success: bool = True
    product_id: str = Field(alias="productId")
    enabled: bool
    limit: int
    current: int


class LimitsUpdateRequest(CamelModel):
    credits_limit: int = Field(alias="creditsLimit", ge=-1)
    product_limit: int = Field(alias="productLimit", ge=-1)


class PlanChangeRequest(CamelModel):
    plan: str


class UsageResponse(CamelModel):
    success: bool = True
    usage: Dict[str, Any] = Field(default_factory=dict)


class ComplianceRequest(CamelModel):
    shop_domain: str


class ComplianceResponse(CamelModel):
    success: bool = True
    breakdown: Dict[str, int] = Field(default_factory=dict)
