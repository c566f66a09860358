"""
Territory — именованный полигон арендатора

Mutable на уровне хранилища (арендатор может перерисовать), но каждый
снапшот immutable. Перерисовка увеличивает version: старые preview
становятся недействительными, уже проданные резервации не меняются.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Territory(BaseModel):
    """Снапшот территории."""

    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    name: str = Field(default="Service area")
    geometry: dict[str, Any] = Field(..., description="Нормализованный GeoJSON")
    version: int = Field(default=1, ge=1)
    normalization_fixes: tuple[str, ...] = Field(
        default_factory=tuple, description="Исправления, применённые при сохранении"
    )
    updated_at: datetime

    model_config = {"frozen": True}
