# cycle_models.py

import enum
import logging
import time
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

# --- Logging Setup ---
logger = logging.getLogger("CycleRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured


def configure_logging(debug: bool, level: int = logging.INFO):
    """Configures the CycleRunner logger level; debug forces DEBUG, otherwise level applies."""
    log_level = logging.DEBUG if debug else level
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.debug(f"CycleRunner logging level set to {logging.getLevelName(log_level)}")


# ---------------------------
# Errors
# ---------------------------
class CycleRunnerError(Exception):
    """Base class for all errors raised by the cycle runner."""


class ConfigError(CycleRunnerError):
    """Malformed or missing configuration. Fatal at startup."""


class AuthError(CycleRunnerError):
    """Digest challenge could not be answered (unparseable, or no credentials)."""


# ---------------------------
# Configuration Models
# ---------------------------
ALLOWED_METHODS = ['GET', 'POST', 'PUT']
BODY_METHODS = ('POST', 'PUT')


class RequestSpec(BaseModel):
    method: str = Field(..., description="HTTP method (GET, POST or PUT)")
    url: str = Field(..., description="Absolute http(s) URL of the request")
    headers: Dict[str, str] = Field(default_factory=dict, description="Statically configured request headers")
    body: Optional[str] = Field(None, description="Raw request body, sent for POST/PUT only. May contain {{field}} placeholders.")

    model_config = ConfigDict(extra="ignore")

    @field_validator('method')
    def validate_method(cls, v):
        method_upper = v.upper()
        if method_upper not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {ALLOWED_METHODS}, got '{v}'")
        return method_upper

    @field_validator('url')
    def validate_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"url must be an absolute http(s) URL (e.g., 'http://example.com/a'), got '{v}'")
        return v

    @field_validator('headers', mode='before')
    def validate_headers(cls, v):
        return {} if v is None else v

    @property
    def sends_body(self) -> bool:
        return self.method in BODY_METHODS


class AuthConfig(BaseModel):
    """Digest credentials; realm/nonce may be pre-set, otherwise they come from a 401 challenge."""
    username: str = Field(..., description="Digest username")
    password: str = Field(..., description="Digest password")
    realm: Optional[str] = Field(None, description="Pre-set realm (skips the priming request together with nonce)")
    nonce: Optional[str] = Field(None, description="Pre-set server nonce")

    model_config = ConfigDict(frozen=True, extra="ignore")


class GeneratorType(str, enum.Enum):
    RANDOM = "random"
    TIMESTAMP = "timestamp"
    COUNTER = "counter"
    UUID = "uuid"
    FIXED = "fixed"


class FieldSpec(BaseModel):
    name: str = Field(..., min_length=1, description="Header name or body placeholder name")
    generator: GeneratorType = Field(..., description="How the value is produced each cycle")
    fixed_value: Optional[str] = Field(None, alias="value", description="Value returned by the 'fixed' generator")
    field_type: Literal['header', 'body'] = Field('header', description="Inject as a header or as a {{name}} body placeholder")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode='after')
    def check_fixed_value(self) -> 'FieldSpec':
        if self.generator == GeneratorType.FIXED and self.fixed_value is None:
            raise ValueError(f"Field '{self.name}' uses the 'fixed' generator but has no value")
        return self


class FieldMapping(BaseModel):
    source_path: str = Field(..., description="Path into A's response, e.g. 'json.message' or 'headers.User-Agent'")
    target_field: str = Field(..., min_length=1, description="Header name (or body placeholder) set on request B")
    field_type: Literal['header', 'body'] = Field('header', description="Inject into B's headers or B's body placeholders")

    model_config = ConfigDict(extra="ignore")

    @field_validator('source_path')
    def validate_source_path(cls, v):
        prefix, _, rest = v.partition('.')
        if prefix.lower() not in ('json', 'headers') or not rest:
            raise ValueError(f"source_path must look like 'json.<path>' or 'headers.<name>', got '{v}'")
        return v


class CycleConfig(BaseModel):
    """Runtime configuration of one A/B cycle run."""
    request_a: RequestSpec = Field(..., description="Request dispatched at the start of every cycle")
    request_b: RequestSpec = Field(..., description="Request dispatched delay_a_to_b_ms after A")
    delay_a_to_b_ms: int = Field(..., ge=0, alias="delay_between_a_and_b_ms", description="Offset from A's dispatch to B's dispatch")
    delay_a_to_a_ms: int = Field(..., ge=0, alias="delay_between_a_requests_ms", description="Minimum spacing between consecutive A dispatches")
    max_cycles: Optional[int] = Field(None, ge=0, alias="max_requests", description="Number of cycles to run; 0 runs none, unset runs until stopped")
    auth: Optional[AuthConfig] = Field(None, alias="digest_auth", description="Digest credentials applied to both requests")
    generated_fields: List[FieldSpec] = Field(default_factory=list, validation_alias=AliasChoices("generated_fields", "fields"), description="Values generated once per cycle and shared by A and B")
    field_mappings: List[FieldMapping] = Field(default_factory=list, validation_alias=AliasChoices("field_mappings", "mappings"), description="Values propagated from A's response into B")
    request_timeout_ms: int = Field(default=30000, ge=1, description="Total timeout of a single HTTP exchange")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates; disable for self-signed devices")
    user_agent: str = Field(default="CycleRunner/1.0", description="User-Agent sent unless a request sets its own")
    debug: bool = Field(default=False, description="Enable debug logging")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator('max_cycles', mode='before')
    def validate_max_cycles(cls, v):
        if v == "":
            return None
        return v

    @field_validator('generated_fields', 'field_mappings', mode='before')
    def validate_lists(cls, v):
        return [] if v is None else v

    @model_validator(mode='after')
    def check_delays(self) -> 'CycleConfig':
        if self.delay_a_to_b_ms > self.delay_a_to_a_ms:
            logger.warning(
                f"delay_a_to_b_ms ({self.delay_a_to_b_ms}) is greater than delay_a_to_a_ms ({self.delay_a_to_a_ms}); "
                f"B of one cycle will be dispatched after A of the next."
            )
        return self


def load_cycle_config(data: Dict[str, Any]) -> CycleConfig:
    """Validate raw configuration data, raising ConfigError on any problem."""
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")
    try:
        return CycleConfig.model_validate(data)
    except ValidationError as ve:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in ve.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from ve


# ---------------------------
# Request Outcomes
# ---------------------------
class FailureKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    AUTH_ERROR = "auth_error"


class RequestSuccess(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    elapsed_ms: float

    succeeded: Literal[True] = True


class RequestFailure(BaseModel):
    kind: FailureKind
    message: str
    status: Optional[int] = None
    elapsed_ms: float = 0.0

    succeeded: Literal[False] = False

    def describe(self) -> str:
        if self.kind == FailureKind.HTTP_ERROR and self.status is not None:
            return f"{self.kind.value}({self.status})"
        return self.kind.value


Outcome = Union[RequestSuccess, RequestFailure]


class CycleResult(BaseModel):
    cycle_index: int
    a_outcome: Optional[Outcome] = None
    b_outcome: Optional[Outcome] = None
    a_dispatched_at: Optional[float] = None # time.monotonic() seconds
    b_dispatched_at: Optional[float] = None
    observed_a_to_a_ms: Optional[float] = None
    observed_a_to_b_ms: Optional[float] = None
