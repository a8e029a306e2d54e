"""
Execution context handed to every workflow node.

Nodes read secrets and workflow config through it and report what they did.
Decisions taken by the placement and generation engines are recorded as
structured events so an observability consumer can pick them up without
scraping logs.
"""
import os
from typing import Any, Dict, List, Optional

import structlog

from .schemas import DecisionEvent

logger = structlog.get_logger()


class RunContext:
    """
    Secrets, config and reporting for one workflow run.

    Secrets fall back to environment variables (the team's .env).
    """

    def __init__(
        self,
        secrets: Optional[Dict[str, str]] = None,
        config: Optional[Dict[str, Any]] = None,
        use_environment: bool = True,
    ):
        self._secrets = dict(secrets or {})
        self._config = dict(config or {})
        self._use_environment = use_environment
        self.inputs: List[Dict[str, Any]] = []
        self.outputs: List[Dict[str, Any]] = []
        self.events: List[DecisionEvent] = []

    def get_secret(self, name: str) -> Optional[str]:
        if name in self._secrets:
            return self._secrets[name]
        if self._use_environment:
            return os.environ.get(name)
        return None

    def get_config(self, key: str) -> Any:
        return self._config.get(key)

    def report_input(self, data: Dict[str, Any]) -> None:
        self.inputs.append(data)
        logger.debug("node_input", **data)

    def report_output(self, data: Dict[str, Any]) -> None:
        self.outputs.append(data)
        logger.debug("node_output", **data)

    def report_progress(self, percent: int, message: str) -> None:
        logger.info("node_progress", percent=percent, message=message)

    def report_decision(
        self,
        component: str,
        decision: str,
        reason: Optional[str] = None,
        level: str = "info",
        **fields: Any,
    ) -> DecisionEvent:
        """Record a decision and log it under the decision name."""
        event = DecisionEvent(
            component=component,
            decision=decision,
            reason=reason,
            level=level,
            fields=fields,
        )
        self.events.append(event)
        log = getattr(logger, level, logger.info)
        log(decision, component=component, reason=reason, **fields)
        return event

    def decisions(self, component: Optional[str] = None) -> List[str]:
        """Decision names recorded so far, optionally for one component."""
        return [
            e.decision for e in self.events
            if component is None or e.component == component
        ]
