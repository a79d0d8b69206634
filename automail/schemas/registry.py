"""Schemas for the recipient registry and persisted settings.

The registry file holds the durable half of the system: recipients and the
user settings. Everything the engine derives from them lives in
``automail.schemas.reconciliation``.
"""

from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class ScanMode(StrEnum):
    """When automatic scans fire."""

    DISABLED = "disabled"
    INTERVAL = "interval"
    FIXED = "fixed"


class MatcherKind(StrEnum):
    """Which matcher implementation the engine uses."""

    KEYWORD = "keyword"
    OLLAMA = "ollama"


class Recipient(BaseModel):
    """An organization that expects one report email per cycle."""

    sigla: str = Field(description="Short agency code, used for filename matching")
    name: str = Field(description="Display/legal name, used in the greeting")
    email: str = Field(default="", description="Semicolon-separated addresses")
    services: list[str] = Field(default_factory=list)
    notes: str = ""

    @field_validator("services")
    @classmethod
    def _dedupe_services(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for service in value:
            service = service.strip()
            if service and service not in seen:
                seen.append(service)
        return seen

    @property
    def key(self) -> str:
        """Registry key: sigla, trimmed and lower-cased."""
        return registry_key(self.sigla)


def registry_key(sigla: str) -> str:
    return sigla.strip().lower()


class ScanConfiguration(BaseModel):
    """Automatic scan schedule."""

    mode: ScanMode = ScanMode.DISABLED
    interval_minutes: int = Field(default=30, ge=1)


class SignatureConfig(BaseModel):
    """Sender signature appended to every generated body."""

    name: str = ""
    role: str = ""
    company: str = ""
    phone: str = ""


class ContractRule(BaseModel):
    """Fixed-format rule for the recurring contractual report.

    The tokens are literal and deployment specific; they are never derived
    from recipient data.
    """

    institution_token: str = "caixa"
    qualifier_token: str = "economica"
    agency_codes: list[str] = Field(default_factory=lambda: ["caixa", "jamc"])
    file_tokens: list[str] = Field(default_factory=lambda: ["jamc", "15762", "2020"])
    service_label: str = "Relatório CAIXA (JAMC)"
    missing_label: str = "Relatório JAMC"


class Settings(BaseModel):
    """User settings persisted next to the recipients."""

    global_cc: str = ""
    signature: SignatureConfig = Field(default_factory=SignatureConfig)
    scan: ScanConfiguration = Field(default_factory=ScanConfiguration)
    folders: list[str] = Field(default_factory=list)
    matcher: MatcherKind = MatcherKind.KEYWORD
    contract_rule: ContractRule = Field(default_factory=ContractRule)


class RegistryFile(BaseModel):
    """Top-level schema for the registry JSON file."""

    recipients: list[Recipient] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)
