# src/mci_registry/schemas.py
"""
Request and response models shared by the services and the boundary adapters.

Secrets travel as pydantic SecretBytes so reprs, logs and validation errors
never show their content.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretBytes,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from mci_registry import digest as digests
from mci_registry.errors import ValidationError

ID_PATTERN = r"^[a-zA-Z0-9_.-]+$"
TYPE_PATTERN = r"^[a-zA-Z0-9_-]+$"


def _check_digest(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        digests.parse_digest(value)
    except ValidationError as e:
        raise ValueError(e.message) from None
    return value


class IngestRequest(BaseModel):
    """
    Create or update a definition.

    Exactly one of `payload` / `source_url` is required. An empty payload
    (b"") is valid content. Omitted configuration/secrets keep whatever the
    definition currently has; the clear_* flags drop them.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=3, max_length=64, pattern=ID_PATTERN)
    type: str = Field(min_length=3, max_length=64, pattern=TYPE_PATTERN)
    name: str = Field(min_length=3, max_length=64)
    description: str = Field(default="", max_length=300)

    payload: Optional[bytes] = Field(default=None, repr=False)
    source_url: Optional[str] = None
    configuration: Optional[bytes] = Field(default=None, repr=False)
    secrets: Optional[SecretBytes] = None
    clear_configuration: bool = False
    clear_secrets: bool = False

    # Integrity of the submitted/fetched payload.
    expected_digest: Optional[str] = None
    # Optimistic concurrency: digest the caller believes is current.
    expected_prior_digest: Optional[str] = None

    enabled: Optional[bool] = None  # None keeps current; new rows start disabled

    @field_validator("expected_digest", "expected_prior_digest")
    @classmethod
    def check_digests(cls, value):
        return _check_digest(value)

    @model_validator(mode="after")
    def check_payload_source(self):
        if (self.payload is None) == (self.source_url is None):
            raise ValueError("Exactly one of 'payload' or 'source_url' is required")
        if self.source_url is not None and not self.source_url.strip():
            raise ValueError("'source_url' must not be empty")
        if self.configuration is not None and self.clear_configuration:
            raise ValueError("'configuration' and 'clear_configuration' are exclusive")
        if self.secrets is not None and self.clear_secrets:
            raise ValueError("'secrets' and 'clear_secrets' are exclusive")
        return self


class DefinitionManifest(BaseModel):
    """Published description of a definition, read by install()."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=3, max_length=64, pattern=ID_PATTERN)
    type: str = Field(min_length=3, max_length=64, pattern=TYPE_PATTERN)
    name: str = Field(min_length=3, max_length=64)
    description: str = Field(default="", max_length=300)
    file_url: str = Field(min_length=1)
    digest: str
    source_url: Optional[str] = None

    @field_validator("digest")
    @classmethod
    def check_digest(cls, value):
        return _check_digest(value)


class MetadataUpdate(BaseModel):
    """Partial edit of display metadata; None leaves a field as it is."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=TYPE_PATTERN)
    name: Optional[str] = Field(default=None, min_length=3, max_length=64)
    description: Optional[str] = Field(default=None, max_length=300)
    enabled: Optional[bool] = None


class DefinitionView(BaseModel):
    """Public, non-secret view of a committed definition."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    enabled: bool
    name: str
    description: str
    digest: str
    definition_object_key: str
    configuration_digest: Optional[str] = None
    configuration_object_key: Optional[str] = None
    has_secrets: bool = False
    source_url: Optional[str] = None
    revision: int
    created_at: datetime
    updated_at: datetime


class IngestionResult(BaseModel):
    definition: DefinitionView
    changed: bool
    states: List[str]


def build(model_cls, data: Dict[str, Any]):
    """
    Validate raw input into a model, raising the registry ValidationError.

    The pydantic error text lists field locations and messages only; input
    values are left out so secrets cannot leak into the message.
    """
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors(include_input=False, include_url=False)
        )
        raise ValidationError(f"Invalid {model_cls.__name__}: {problems}") from None
