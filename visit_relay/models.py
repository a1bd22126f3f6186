"""
Modul ini mendefinisikan struktur data yang digunakan di pipeline dan API:
- RawEvent: Satu visit seperti dikembalikan Matomo Live API
- FilteredMessage: Payload ringkas yang dikirim ke broker
- VisitRecord: Raw visit yang tersimpan di database
- SaveVisitsRequest / VisitorUrls: Request dan record daftar URL per visitor
- CycleReport: Ringkasan satu siklus fetch
- StatsResponse: Response dari endpoint stats
"""

from datetime import datetime
from typing import Any, ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    field_validator,
)


class RawEvent(BaseModel):
    """
    Model visit dari Matomo.

    Hanya field yang diperiksa pipeline yang didefinisikan; field lain dari
    API tetap disimpan (extra="allow"). Model ini hanya dipakai untuk dedup
    dan publish; salinan raw dipersist langsung dari object response.

    Attributes:
        id: Identifier visit, dipakai sebagai kunci dedup. Diterima dari
            "id" atau "idVisit" (nama asli Matomo); angka diubah ke string.
        visitor_id: ID visitor Matomo
        user_id: User ID yang di-set oleh situs (boleh kosong)
        action_details: Daftar action dalam urutan asli. Nilai non-list
            dianggap list kosong.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="allow", populate_by_name=True, coerce_numbers_to_str=True
    )

    id: str | None = Field(
        default=None, validation_alias=AliasChoices("id", "idVisit")
    )
    visitor_id: str | None = Field(default=None, alias="visitorId")
    user_id: str | None = Field(default=None, alias="userId")
    action_details: list[JsonValue] = Field(
        default_factory=list[JsonValue], alias="actionDetails"
    )

    @field_validator("action_details", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


class FilteredMessage(BaseModel):
    """
    Payload yang dikirim ke broker.

    Hanya berisi action yang lolos filter URL, urutan asli dipertahankan.
    Tidak pernah dipersist sebagai record tersendiri.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)

    visitor_id: str | None = Field(default=None, alias="visitorId")
    user_id: str | None = Field(default=None, alias="userId")
    action_details: list[JsonValue] = Field(..., alias="actionDetails")

    def to_body(self) -> bytes:
        """Serialisasi ke body pesan (UTF-8 JSON)."""
        return self.model_dump_json(by_alias=True).encode("utf-8")


class VisitRecord(BaseModel):
    """
    Raw visit yang tersimpan di database.

    Berbeda dengan RawEvent, VisitRecord memiliki:
    - id: Primary key dari database
    - created_at / updated_at: Timestamp penyimpanan
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)

    id: int
    visitor_id: str = Field(..., alias="visitorId")
    user_id: str | None = Field(default=None, alias="userId")
    action_details: JsonValue = Field(default=None, alias="actionDetails")
    visit_info: JsonValue = Field(default=None, alias="visitInfo")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class SaveVisitsRequest(BaseModel):
    """Body untuk POST /visits/save-visits."""

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)

    visitor_id: str = Field(..., min_length=1, alias="visitorId")
    url: list[str] = Field(..., description="Daftar URL untuk visitor ini")
    user_id: str | None = Field(default=None, alias="userId")


class VisitorUrls(BaseModel):
    """Daftar URL per visitor. Satu record per visitorId (upsert)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)

    id: int
    visitor_id: str = Field(..., alias="visitorId")
    user_id: str | None = Field(default=None, alias="userId")
    url: list[str]
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class CycleReport(BaseModel):
    """
    Ringkasan satu siklus fetch-dedup-publish.

    Invariant: published <= considered <= new <= fetched.
    """

    started_at: datetime
    date_param: str = Field(..., description="Nilai parameter date ke Matomo")
    fetched: int = 0
    saved: int = 0
    save_failed: int = 0
    new: int = 0
    considered: int = 0
    published: int = 0
    publish_failed: bool = False


class StatsResponse(BaseModel):
    """Response model untuk endpoint stats."""

    broker_state: str
    dedup_size: int
    cycles_completed: int
    last_success_at: datetime | None = None
    last_report: CycleReport | None = None
