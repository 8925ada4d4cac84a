"""
Error policy configuration loader.

Loads the requeue and discard rules applied to errors that escape the
platform translators from config/error_policy.yml.

Consumers:
  - ErrorClassifier: requeue / quiet discard / discard decisions
  - secrets.sanitize_action: keys stripped before logging

Usage:
    from action_processor.config.error_policy import ErrorPolicyLoader

    policy = ErrorPolicyLoader().load()
    130 in policy.requeue_vendor_codes  # True
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent / "error_policy.yml"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class MessageRule:
    """Matches an error message and assigns the log level used when discarding."""

    text: str
    level: int = logging.INFO
    match: str = "contains"
    alert_level: Optional[str] = None

    def matches(self, message: str) -> bool:
        if not message:
            return False
        if self.match == "exact":
            return message == self.text
        return self.text in message


@dataclass(frozen=True)
class ErrorPolicy:
    """Immutable error policy."""

    requeue_vendor_codes: Tuple[int, ...] = ()
    infrastructure_codes: Tuple[str, ...] = ()
    quiet_vendor_codes: Dict[int, int] = field(default_factory=dict)
    message_rules: Tuple[MessageRule, ...] = ()
    sensitive_keys: Tuple[str, ...] = ()


def _level(value: Any) -> int:
    return _LEVELS.get(str(value or "info").lower(), logging.INFO)


class ErrorPolicyLoader:
    """
    Loader for config/error_policy.yml.

    The policy file ships inside the package; an explicit path may be
    supplied for tests or deployments that override it.
    """

    def __init__(self, config_path: Optional[str | Path] = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_POLICY_PATH

    def load(self) -> ErrorPolicy:
        """
        Load and validate the error policy.

        Returns:
            Parsed ErrorPolicy

        Raises:
            FileNotFoundError: If the policy file doesn't exist
            ValueError: If the policy file is malformed
        """
        if not self._config_path.exists():
            raise FileNotFoundError(f"Error policy not found: {self._config_path}")

        with open(self._config_path) as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError(f"Error policy must be a mapping: {self._config_path}")

        policy = self._parse(raw)
        logger.info(
            "Loaded error policy",
            extra={
                "path": str(self._config_path),
                "requeue_vendor_codes": list(policy.requeue_vendor_codes),
                "message_rules": len(policy.message_rules),
            },
        )
        return policy

    @staticmethod
    def _parse(raw: Dict[str, Any]) -> ErrorPolicy:
        requeue = raw.get("requeue") or {}
        discard = raw.get("discard") or {}
        logging_section = raw.get("logging") or {}

        quiet_vendor_codes = {
            int(entry["code"]): _level(entry.get("level"))
            for entry in discard.get("vendor_codes") or []
        }
        message_rules = tuple(
            MessageRule(
                text=str(entry["text"]),
                level=_level(entry.get("level")),
                match=str(entry.get("match", "contains")),
                alert_level=entry.get("alert_level"),
            )
            for entry in discard.get("message_rules") or []
        )

        return ErrorPolicy(
            requeue_vendor_codes=tuple(int(c) for c in requeue.get("vendor_codes") or []),
            infrastructure_codes=tuple(
                str(c) for c in requeue.get("infrastructure_codes") or []
            ),
            quiet_vendor_codes=quiet_vendor_codes,
            message_rules=message_rules,
            sensitive_keys=tuple(
                str(k) for k in logging_section.get("sensitive_keys") or []
            ),
        )
