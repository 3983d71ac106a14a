from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator


class ResetUsageRequest(BaseModel):
    kid: str = Field(min_length=1, max_length=64)
    yyyymm: str | None = Field(default=None, description="Month in YYYYMM format.")

    @field_validator("kid")
    @classmethod
    def strip_kid(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Invalid or missing kid")
        return value

    @field_validator("yyyymm")
    @classmethod
    def validate_month(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if len(value) != 6 or not value.isdigit():
            raise ValueError("Invalid yyyymm format. Expected YYYYMM.")
        year, month = int(value[:4]), int(value[4:])
        if not (2000 <= year <= 2100 and 1 <= month <= 12):
            raise ValueError("Invalid yyyymm format. Expected YYYYMM.")
        return value


class ResetUsageResponse(BaseModel):
    success: bool = True
    kid: str
    yyyymm: str
    usage: int


class ReportDailyRequest(BaseModel):
    date: str | None = Field(default=None, description="Day in YYYYMMDD format. Defaults to yesterday (UTC).")

    @field_validator("date")
    @classmethod
    def validate_day(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            datetime.strptime(value, "%Y%m%d")
        except ValueError as exc:
            raise ValueError("Invalid date format. Expected YYYYMMDD.") from exc
        return value

    def target_date(self) -> date | None:
        if self.date is None:
            return None
        return datetime.strptime(self.date, "%Y%m%d").date()


class OverageItem(BaseModel):
    account_id: str
    overage: int
    units_100k: int
    amount_eur: float


class ReportDailyResponse(BaseModel):
    ok: bool = True
    date: str
    already_reported: bool = False
    items: list[OverageItem] = Field(default_factory=list)
