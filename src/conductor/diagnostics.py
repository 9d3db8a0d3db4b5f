"""Model/provider misconfiguration checks.

These only produce records for logging. Nothing here changes task state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from conductor.runtime.base import RuntimeClientError, SessionClient
from conductor.runtime.events import MessageUpdated

logger = logging.getLogger(__name__)

DiagnosticKind = Literal["empty_model_id", "unknown_provider", "unknown_model"]


@dataclass(slots=True, frozen=True)
class ModelDiagnostic:
    kind: DiagnosticKind
    agent: str | None
    provider_id: str | None
    model_id: str | None

    def describe(self) -> str:
        who = f"agent {self.agent!r}" if self.agent else "message"
        if self.kind == "empty_model_id":
            return f"{who} has an empty model id (provider {self.provider_id or 'unknown'})"
        if self.kind == "unknown_provider":
            return f"{who} uses unknown provider {self.provider_id!r}"
        return f"{who} uses model {self.model_id!r} not offered by {self.provider_id!r}"


def inspect_message_model(event: MessageUpdated) -> ModelDiagnostic | None:
    if not event.has_model:
        return None
    if not event.model_id or not event.model_id.strip():
        return ModelDiagnostic(
            kind="empty_model_id",
            agent=event.agent,
            provider_id=event.provider_id,
            model_id=event.model_id,
        )
    return None


def _agent_model(agent: dict[str, Any]) -> tuple[str | None, str | None]:
    model = agent.get("model")
    if isinstance(model, dict):
        provider = model.get("providerID") or model.get("provider")
        model_id = model.get("modelID") or model.get("model")
        return (provider or None, model_id or None)
    parts = str(model).split("/", 1)
    if len(parts) == 2:
        return (parts[0] or None, parts[1] or None)
    return (None, parts[0] or None)


def _provider_models(provider: dict[str, Any]) -> set[str] | None:
    models = provider.get("models")
    if isinstance(models, dict):
        return set(models)
    if isinstance(models, list):
        return {str(item.get("id")) if isinstance(item, dict) else str(item) for item in models}
    return None


def check_agent_models(
    agents: list[dict[str, Any]], providers: list[dict[str, Any]]
) -> list[ModelDiagnostic]:
    diagnostics: list[ModelDiagnostic] = []
    for agent in agents:
        if not agent.get("model"):
            continue
        name = str(agent.get("name") or "") or None
        provider_id, model_id = _agent_model(agent)
        if not model_id or not model_id.strip():
            diagnostics.append(ModelDiagnostic("empty_model_id", name, provider_id, model_id))
            continue
        if provider_id is None:
            continue
        provider = next(
            (p for p in providers if provider_id in (p.get("id"), p.get("name"))),
            None,
        )
        if provider is None:
            diagnostics.append(ModelDiagnostic("unknown_provider", name, provider_id, model_id))
            continue
        offered = _provider_models(provider)
        if offered is not None and model_id not in offered:
            diagnostics.append(ModelDiagnostic("unknown_model", name, provider_id, model_id))
    return diagnostics


async def check_configuration(client: SessionClient) -> list[ModelDiagnostic]:
    """Fetch agents and providers from the runtime and log suspicious model settings."""
    try:
        agents = await client.list_agents()
        providers = await client.list_providers()
    except RuntimeClientError as exc:
        logger.warning("Configuration check skipped: %s", exc)
        return []
    logger.info("Runtime reports %s agent(s), %s provider(s)", len(agents), len(providers))
    diagnostics = check_agent_models(agents, providers)
    for diagnostic in diagnostics:
        logger.warning("Configuration problem: %s", diagnostic.describe())
    return diagnostics
