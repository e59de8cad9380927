"""
Configuration management (SSOT).

This module defines ALL configuration for budget-bridge.
All config keys are defined here; no other module should invent config keys.

Secrets (budget token, OpenAI key, vault encryption key) are normally
supplied through environment variables rather than the YAML file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class BankConfig:
    """Bank statement API (Fio) configuration."""

    base_url: str = "https://fioapi.fio.cz/v1/rest"
    timeout_seconds: int = 30
    max_retries: int = 3
    # Longest date range a single import may request
    max_import_days: int = 90


@dataclass
class BudgetConfig:
    """Budgeting service (YNAB) configuration."""

    base_url: str = "https://api.ynab.com/v1"
    token: str = ""
    budget_id: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class LLMConfig:
    """OpenAI-compatible categorization provider configuration.

    - enabled: Master switch (default OFF); rules still run when disabled
    - base_url: Any OpenAI-compatible chat completions endpoint
    - max_concurrent: Bound on parallel provider calls per batch
    """

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 30
    # Retry policy for provider calls
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 20.0
    retry_deadline_seconds: float = 120.0
    max_concurrent: int = 4
    temperature: float = 0.0


@dataclass
class VaultConfig:
    """Credential vault configuration."""

    encryption_key: str = ""
    token_cache_minutes: int = 30
    persist_audit: bool = True


@dataclass
class SubmissionConfig:
    """Submission workflow settings."""

    max_concurrent: int = 4
    # Mark submitted transactions approved in the budgeting service
    auto_approve: bool = False
    cleared: bool = True


@dataclass
class Config:
    """Application configuration (SSOT)."""

    bank: BankConfig = field(default_factory=BankConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.bank.base_url:
            errors.append("bank.base_url is required")
        if self.bank.max_import_days < 1:
            errors.append("bank.max_import_days must be >= 1")

        if not self.budget.base_url:
            errors.append("budget.base_url is required")

        if not self.vault.encryption_key:
            errors.append("vault.encryption_key is required (BUDGET_BRIDGE_ENCRYPTION_KEY)")
        if self.vault.token_cache_minutes < 0:
            errors.append("vault.token_cache_minutes must be >= 0")

        if self.llm.enabled:
            if not self.llm.base_url:
                errors.append("llm.base_url is required when LLM is enabled")
            if not self.llm.api_key:
                errors.append("llm.api_key is required when LLM is enabled")
        if self.llm.max_concurrent < 1:
            errors.append("llm.max_concurrent must be >= 1")
        if self.submission.max_concurrent < 1:
            errors.append("submission.max_concurrent must be >= 1")

        return errors

    def validate_for_submission(self) -> list[str]:
        """Extra checks needed only by commands that talk to the budgeting service."""
        errors: list[str] = []
        if not self.budget.token:
            errors.append("budget.token is required (YNAB_TOKEN)")
        if not self.budget.budget_id:
            errors.append("budget.budget_id is required (YNAB_BUDGET_ID)")
        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if value:
        try:
            return int(value)
        except ValueError:
            pass  # Keep default
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - BANK_API_URL
    - YNAB_URL
    - YNAB_TOKEN
    - YNAB_BUDGET_ID
    - OPENAI_API_KEY
    - OPENAI_BASE_URL
    - OPENAI_MODEL
    - BUDGET_BRIDGE_LLM_ENABLED (true/false)
    - BUDGET_BRIDGE_ENCRYPTION_KEY
    - BUDGET_BRIDGE_TOKEN_CACHE_MINUTES
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    bank_data = data.get("bank", {}) or {}
    bank = BankConfig(
        base_url=os.environ.get(
            "BANK_API_URL", bank_data.get("base_url", BankConfig.base_url)
        ),
        timeout_seconds=bank_data.get("timeout_seconds", 30),
        max_retries=bank_data.get("max_retries", 3),
        max_import_days=bank_data.get("max_import_days", 90),
    )

    budget_data = data.get("budget", {}) or {}
    budget = BudgetConfig(
        base_url=os.environ.get("YNAB_URL", budget_data.get("base_url", BudgetConfig.base_url)),
        token=os.environ.get("YNAB_TOKEN", budget_data.get("token", "")),
        budget_id=os.environ.get("YNAB_BUDGET_ID", budget_data.get("budget_id", "")),
        timeout_seconds=budget_data.get("timeout_seconds", 30),
        max_retries=budget_data.get("max_retries", 3),
    )

    llm_data = data.get("llm", {}) or {}
    llm = LLMConfig(
        enabled=_env_bool("BUDGET_BRIDGE_LLM_ENABLED", llm_data.get("enabled", False)),
        base_url=os.environ.get("OPENAI_BASE_URL", llm_data.get("base_url", LLMConfig.base_url)),
        api_key=os.environ.get("OPENAI_API_KEY", llm_data.get("api_key", "")),
        model=os.environ.get("OPENAI_MODEL", llm_data.get("model", LLMConfig.model)),
        timeout_seconds=llm_data.get("timeout_seconds", 30),
        max_retries=llm_data.get("max_retries", 3),
        retry_initial_delay=llm_data.get("retry_initial_delay", 1.0),
        retry_max_delay=llm_data.get("retry_max_delay", 20.0),
        retry_deadline_seconds=llm_data.get("retry_deadline_seconds", 120.0),
        max_concurrent=llm_data.get("max_concurrent", 4),
        temperature=llm_data.get("temperature", 0.0),
    )

    vault_data = data.get("vault", {}) or {}
    vault = VaultConfig(
        encryption_key=os.environ.get(
            "BUDGET_BRIDGE_ENCRYPTION_KEY", vault_data.get("encryption_key", "")
        ),
        token_cache_minutes=_env_int(
            "BUDGET_BRIDGE_TOKEN_CACHE_MINUTES", vault_data.get("token_cache_minutes", 30)
        ),
        persist_audit=vault_data.get("persist_audit", True),
    )

    submission_data = data.get("submission", {}) or {}
    submission = SubmissionConfig(
        max_concurrent=submission_data.get("max_concurrent", 4),
        auto_approve=submission_data.get("auto_approve", False),
        cleared=submission_data.get("cleared", True),
    )

    state_db = data.get("state_db_path", "data/state.db")

    return Config(
        bank=bank,
        budget=budget,
        llm=llm,
        vault=vault,
        submission=submission,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# budget-bridge configuration
#
# Secrets are best supplied through environment variables:
#   YNAB_TOKEN, OPENAI_API_KEY, BUDGET_BRIDGE_ENCRYPTION_KEY

# Bank statement API (Fio)
bank:
  base_url: "https://fioapi.fio.cz/v1/rest"
  timeout_seconds: 30
  max_retries: 3
  max_import_days: 90                      # Longest allowed import range

# Budgeting service (YNAB)
budget:
  base_url: "https://api.ynab.com/v1"
  token: ""                                # Or YNAB_TOKEN
  budget_id: ""                            # Or YNAB_BUDGET_ID
  timeout_seconds: 30
  max_retries: 3

# AI categorization fallback (OpenAI-compatible)
llm:
  enabled: false                           # Rules still apply when disabled
  base_url: "https://api.openai.com/v1"
  api_key: ""                              # Or OPENAI_API_KEY
  model: "gpt-4o-mini"
  timeout_seconds: 30
  max_retries: 3
  retry_initial_delay: 1.0
  retry_max_delay: 20.0
  retry_deadline_seconds: 120.0
  max_concurrent: 4                        # Parallel provider calls per batch
  temperature: 0.0

# Credential vault
vault:
  encryption_key: ""                       # Or BUDGET_BRIDGE_ENCRYPTION_KEY
  token_cache_minutes: 30
  persist_audit: true

# Submission workflow
submission:
  max_concurrent: 4
  auto_approve: false
  cleared: true

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
