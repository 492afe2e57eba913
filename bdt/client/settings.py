"""
Resolved server configuration.

Defines the read-only Pydantic models describing the tested server, its
authentication and request settings, and the run settings the test runner
reads (API version, bail, name filter).
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..core.exceptions import ValidationError
from ..tree.version import Version


class AuthType(Enum):
    """Supported authorization flows."""

    BACKEND_SERVICES = "backend-services"
    CLIENT_CREDENTIALS = "client-credentials"
    NONE = "none"


SUPPORTED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


class _Frozen(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class AuthenticationOptions(_Frozen):
    """How to obtain access tokens from the tested server."""

    type: AuthType = Field(AuthType.BACKEND_SERVICES, description="Authorization flow")
    optional: bool = Field(False, description="Auth is supported but not required")
    client_id: Optional[str] = Field(None, description="Registered client ID")
    client_secret: Optional[str] = Field(None, description="Secret for client-credentials")
    scope: str = Field("system/*.read", description="Scopes to request")
    token_endpoint: Optional[str] = Field(None, description="Full token endpoint URL")
    private_key: Optional[Dict[str, Any]] = Field(None, description="Private key as JWK")
    custom_token_claims: Dict[str, Any] = Field(default_factory=dict)
    custom_token_headers: Dict[str, Any] = Field(default_factory=dict)
    token_sign_algorithm: Optional[str] = Field(None, description="JWT signing algorithm")
    token_expires_in: Union[int, str] = Field(300, description="Seconds or duration like '5m'")
    jwks_url: Optional[str] = Field(None, description="Public JWKS URL (jku header)")

    @field_validator("token_sign_algorithm")
    @classmethod
    def validate_algorithm(cls, v):
        if v is not None and v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Token sign algorithm must be one of: {SUPPORTED_ALGORITHMS}")
        return v


class RequestSettings(_Frozen):
    """Transport settings applied to every request."""

    strict_ssl: bool = Field(True, alias="strictSSL", description="Verify TLS certificates")
    timeout: int = Field(10000, ge=1, description="Per-request timeout in milliseconds")
    custom_headers: Dict[str, str] = Field(default_factory=dict)


class NormalizedConfig(_Frozen):
    """Everything a test needs to know about the server under test."""

    base_url: str = Field(..., alias="baseURL", description="FHIR server base URL")
    system_export_endpoint: Optional[str] = Field(None, description="e.g. '$export'")
    patient_export_endpoint: Optional[str] = Field(None, description="e.g. 'Patient/$export'")
    group_export_endpoint: Optional[str] = Field(None, description="e.g. 'Group/1/$export'")
    authentication: AuthenticationOptions = Field(default_factory=AuthenticationOptions)
    requests: RequestSettings = Field(default_factory=RequestSettings)

    # Resource-type metadata
    fastest_resource: str = Field("Patient", description="Cheapest resource type to export")
    supported_resource_types: List[str] = Field(default_factory=list)

    # Run settings
    api_version: str = Field("2", description="Bulk Data API version to test for")
    bail: bool = Field(False, description="Stop after the first failed test")
    match: Optional[str] = Field(None, description="Case-insensitive regex on test names")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v):
        if not v or not v.strip():
            raise ValueError("Base URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Base URL must be an http(s) URL: {v}")
        return v.strip()

    @field_validator("api_version", mode="before")
    @classmethod
    def validate_api_version(cls, v):
        return str(Version(v))

    @property
    def export_endpoints(self) -> Dict[str, Optional[str]]:
        return {
            "system": self.system_export_endpoint,
            "patient": self.patient_export_endpoint,
            "group": self.group_export_endpoint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedConfig":
        """Build a config from snake_case or camelCase keys."""
        try:
            return cls.model_validate(data)
        except ValueError as e:
            raise ValidationError(
                f"Invalid server configuration: {e}",
                validation_type="server_config",
            )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "NormalizedConfig":
        """Load a config from a JSON or YAML file."""
        path = Path(path)
        if not path.exists():
            raise ValidationError(
                f"Configuration file not found: {path}",
                validation_type="server_config",
            )

        text = path.read_text(encoding="utf-8")
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValidationError(
                f"Invalid configuration file {path}: {e}",
                validation_type="server_config",
            )

        if not isinstance(data, dict):
            raise ValidationError(
                f"Configuration file {path} must contain an object",
                validation_type="server_config",
            )

        return cls.from_dict(data)
