"""
Request bodies for the device control API.

Fields are optional at the model level so that missing values surface as
the bridge's own 400 messages rather than framework validation errors.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from bridge.stores import ExternalCredentials


class CreateDeviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(default=None, alias="deviceId")
    external_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("externalUrl", "supabaseUrl"),
    )
    external_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("externalKey", "supabaseKey"),
    )

    def credentials(self) -> Optional[ExternalCredentials]:
        """Both url and key are needed; either one alone disables persistence."""
        if not self.external_url or not self.external_key:
            return None
        return ExternalCredentials(url=self.external_url, key=self.external_key)


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(default=None, alias="deviceId")
    to: Optional[str] = None
    message: Optional[str] = None
