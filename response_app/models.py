from datetime import datetime
from typing import Optional, Literal, Dict, Any, List

from pydantic import BaseModel, Field

VerificationStatus = Literal["pending", "verified", "unverified"]
EntityKind = Literal["disaster", "report", "resource"]
MutationAction = Literal["created", "updated", "deleted"]


class GeoPoint(BaseModel):
    # stored and sent as (lon, lat), never the other way round
    lon: float = Field(ge=-180.0, le=180.0)
    lat: float = Field(ge=-90.0, le=90.0)

    def wkt(self) -> str:
        return f"POINT({self.lon} {self.lat})"


class AuditEntry(BaseModel):
    action: str
    actor_id: str
    timestamp: datetime


class Disaster(BaseModel):
    id: str
    title: str
    location_name: str
    location: Optional[GeoPoint] = None
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    owner_id: str
    created_at: datetime
    audit_trail: List[AuditEntry] = Field(default_factory=list)


class Report(BaseModel):
    id: str
    disaster_id: str
    user_id: str
    content: str
    image_url: Optional[str] = None
    verification_status: VerificationStatus = "pending"
    created_at: datetime


class Resource(BaseModel):
    id: str
    disaster_id: str
    name: str
    location_name: str
    location: GeoPoint
    category: str
    created_at: datetime
    seq: int = 0  # insertion order, last tie-break for equal distances


class NearbyResource(BaseModel):
    resource: Resource
    distance_m: float


class MutationEvent(BaseModel):
    kind: EntityKind
    action: MutationAction
    disaster_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def type(self) -> str:
        return f"{self.kind}.{self.action}"


class WSMsg(BaseModel):
    type: str
    data: Dict[str, Any]


class VerificationOutcome(BaseModel):
    report: Report
    message: str = ""
    changed: bool = False
