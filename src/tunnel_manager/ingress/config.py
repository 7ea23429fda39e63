"""cloudflared ingress configuration model.

The live file looks like::

    tunnel: 6ff42ae2-765d-4adf-8112-31c55c1551ef
    credentials-file: /etc/cloudflared/6ff42ae2.json
    ingress:
      - hostname: api.example.com
        service: http://localhost:5000
        originRequest:
          noTLSVerify: true
      - service: http_status:404

The last rule is always the catch-all. Top-level keys this module does not
know about are carried through unchanged.
"""

from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..common.exceptions import IngressError

CATCH_ALL_SERVICE = "http_status:404"


class IngressRule(BaseModel):
    """One hostname -> service mapping."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    hostname: str | None = None
    service: str = Field(min_length=1)
    origin_request: dict[str, Any] | None = Field(default=None, alias="originRequest")

    @field_validator("hostname")
    @classmethod
    def lower_hostname(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else None

    @property
    def is_catch_all(self) -> bool:
        return self.hostname is None

    @classmethod
    def for_service(cls, hostname: str, service_url: str) -> "IngressRule":
        """Rule routing ``hostname`` to a local service over plain HTTP."""
        return cls(
            hostname=hostname,
            service=service_url,
            origin_request={"noTLSVerify": True},
        )


class IngressConfig(BaseModel):
    """Whole cloudflared config file."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    tunnel: str = Field(min_length=1)
    credentials_file: str = Field(min_length=1, alias="credentials-file")
    ingress: list[IngressRule] = Field(min_length=1)

    @field_validator("ingress")
    @classmethod
    def check_catch_all(cls, v: list[IngressRule]) -> list[IngressRule]:
        """The last rule must match every request."""
        if not v[-1].is_catch_all:
            raise ValueError("last ingress rule must be a catch-all (no hostname)")
        return v

    @classmethod
    def from_yaml(cls, text: str) -> "IngressConfig":
        """Parse and validate a config file body.

        Raises:
            IngressError: If the YAML is malformed or the structure is invalid
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise IngressError(f"Ingress config is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise IngressError("Ingress config must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise IngressError(f"Invalid ingress config: {e}") from e

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.model_dump(by_alias=True, exclude_none=True),
            default_flow_style=False,
            sort_keys=False,
        )

    @property
    def hostname_rules(self) -> list[IngressRule]:
        return [rule for rule in self.ingress if not rule.is_catch_all]

    def find(self, hostname: str) -> IngressRule | None:
        hostname = hostname.lower()
        for rule in self.hostname_rules:
            if rule.hostname == hostname:
                return rule
        return None

    def with_rule(self, rule: IngressRule) -> "IngressConfig":
        """Copy with ``rule`` inserted just before the catch-all."""
        rules = list(self.ingress)
        rules.insert(len(rules) - 1, rule)
        return self.model_copy(update={"ingress": rules})

    def without_rule(self, hostname: str) -> "IngressConfig":
        hostname = hostname.lower()
        rules = [rule for rule in self.ingress if rule.hostname != hostname]
        return self.model_copy(update={"ingress": rules})

    def with_rules(self, rules: list[IngressRule]) -> "IngressConfig":
        """Copy whose hostname rules are exactly ``rules``; the catch-all is kept."""
        return self.model_copy(update={"ingress": [*rules, self.ingress[-1]]})

    @property
    def cname_target(self) -> str:
        """DNS target every public hostname of this tunnel points at."""
        return f"{self.tunnel}.cfargotunnel.com"
