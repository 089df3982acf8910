import os
from dataclasses import dataclass, field

_FALSY = ("false", "0", "no", "off")


def _env_flag(name: "str", default: "bool" = True) -> "bool":
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in _FALSY


@dataclass
class FeatureFlags:
    # all checks are on unless explicitly disabled
    credit_validation: "bool" = True
    credit_deduction: "bool" = True
    spending_limit_checks: "bool" = True

    @classmethod
    def from_env(cls) -> "FeatureFlags":
        return cls(
            credit_validation=_env_flag("ENABLE_CREDIT_VALIDATION"),
            credit_deduction=_env_flag("ENABLE_CREDIT_DEDUCTION"),
            spending_limit_checks=_env_flag("ENABLE_SPENDING_LIMIT_CHECKS"),
        )

    def is_credit_validation_enabled(self) -> "bool":
        return self.credit_validation

    def is_credit_deduction_enabled(self) -> "bool":
        return self.credit_deduction

    def is_spending_limit_checks_enabled(self) -> "bool":
        return self.spending_limit_checks


@dataclass
class Config:
    # used to build links in notification emails
    base_url: "str" = "http://localhost:3000"
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"

    usage_api_url: "str" = ""
    usage_api_key: "str" = ""

    email_api_url: "str" = ""
    email_api_key: "str" = ""
    email_sender: "str" = "noreply@localhost"

    # seconds, applied to every collaborator HTTP call
    http_timeout: "float" = 10.0
    database_path: "str" = "creditmeter.db"

    flags: "FeatureFlags" = field(default_factory=FeatureFlags)

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            base_url=os.environ.get("BASE_URL", cls.base_url).rstrip("/"),
            log_level=os.environ.get("CREDITMETER_LOG_LEVEL", cls.log_level),
            log_format=os.environ.get("CREDITMETER_LOG_FORMAT", cls.log_format),
            usage_api_url=os.environ.get("CREDITMETER_USAGE_API_URL", ""),
            usage_api_key=os.environ.get("CREDITMETER_USAGE_API_KEY", ""),
            email_api_url=os.environ.get("CREDITMETER_EMAIL_API_URL", ""),
            email_api_key=os.environ.get("CREDITMETER_EMAIL_API_KEY", ""),
            email_sender=os.environ.get("CREDITMETER_EMAIL_SENDER", cls.email_sender),
            http_timeout=float(
                os.environ.get("CREDITMETER_HTTP_TIMEOUT", cls.http_timeout)
            ),
            database_path=os.environ.get(
                "CREDITMETER_DATABASE_PATH", cls.database_path
            ),
            flags=FeatureFlags.from_env(),
        )

    @property
    def email_enabled(self) -> "bool":
        return bool(self.email_api_url)
