"""
Pydantic schemas mirroring the JSON payloads peers relay to each other.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, validator


class SdpModel(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str

    @validator("sdp")
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sdp text is empty")
        return value


class SdpEnvelope(BaseModel):
    sdp: SdpModel


class IceModel(BaseModel):
    candidate: str
    sdp_mline_index: int = Field(alias="sdpMLineIndex", ge=0)
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    model_config = ConfigDict(populate_by_name=True)


class IceEnvelope(BaseModel):
    ice: IceModel


class PeersResponse(BaseModel):
    registered: list[str] = Field(default_factory=list)
    sessions: list[list[str]] = Field(default_factory=list)
