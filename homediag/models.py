from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Role = Literal["user", "assistant"]
Feedback = Literal["up", "down"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiagnosisRecord(BaseModel):
    message: Optional[str] = None
    diagnosis: str = ""
    trade: str = ""
    action_required: str = ""
    estimated_cost: str = ""

    @field_validator("diagnosis", "trade", "action_required", "estimated_cost", mode="before")
    @classmethod
    def _as_text(cls, v):
        # Models occasionally emit numbers or null for the text fields
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("message", mode="before")
    @classmethod
    def _message_as_text(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def is_valid(self) -> bool:
        return bool(self.diagnosis.strip())

    def summary(self) -> str:
        """Context line handed back to the model on follow-up turns."""
        return f"DIAGNOSIS: {self.diagnosis}\n\n{self.action_required}\n\nESTIMATED COST: {self.estimated_cost}"


class Message(BaseModel):
    role: Role
    content: str = ""
    attachments: List[str] = Field(default_factory=list)
    feedback: Optional[Feedback] = None
    has_updated_diagnosis: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    def for_history(self) -> dict:
        return {"role": self.role, "content": self.content, "attachments": list(self.attachments)}


class Service(BaseModel):
    short: str
    full: str


class Provider(BaseModel):
    place_id: Optional[str] = None
    name: str
    address: str = "Address not available"
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    summary: str = ""
    services: List[Service] = Field(default_factory=list)
    distance_text: Optional[str] = None
    is_open: Optional[bool] = None
    score: Optional[float] = None

    @field_validator("services", mode="before")
    @classmethod
    def _services(cls, v):
        if not v:
            return []
        out = []
        for s in v:
            if isinstance(s, str):
                out.append({"short": s.split(" ")[0], "full": s})
            else:
                out.append(s)
        return out


class Location(BaseModel):
    lat: float
    lng: float
    address: str = ""


class Conversation(BaseModel):
    id: str
    title: str = "New Diagnosis"
    image_url: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    diagnosis: Optional[DiagnosisRecord] = None
    reasoning: str = ""
    providers: List[Provider] = Field(default_factory=list)
    location: Optional[Location] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------- API payloads ----------------
class HistoryItem(BaseModel):
    role: Role
    content: str = ""
    attachments: List[str] = Field(default_factory=list)


class DiagnoseRequest(BaseModel):
    image: Optional[str] = None
    history: List[HistoryItem] = Field(default_factory=list)
    feedback: Optional[Feedback] = None
    providers: List[Provider] = Field(default_factory=list)


class GeocodeRequest(BaseModel):
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class GeocodeResponse(BaseModel):
    lat: float
    lng: float
    address: str


class ProviderSearchRequest(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    trade: Optional[str] = None
    radius: Optional[int] = None


class ProviderSearchResponse(BaseModel):
    providers: List[Provider]
