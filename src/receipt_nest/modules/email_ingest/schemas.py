from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ForwardingAddressOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email_address: str = Field(serialization_alias="emailAddress")
    fallback_addresses: list[str] = Field(serialization_alias="fallbackAddresses")
