"""Orchestration layer used by the CLI to plan, apply and destroy."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from .adapters import ResourceProvider
from .config import ConvergeSettings, load_settings
from .engine import RetryingProvider, RetryPolicy, TopologicalExecutor, default_handlers
from .errors import ConvergenceError
from .graph import DeclarationDocument, DeclarationLoader, ResourceGraph, build, load_documents
from .models import ApplyResult, Plan
from .state import StateStore


@dataclass(slots=True)
class ConvergenceResult:
    """Result returned by :class:`ConvergenceService` runs."""

    plan: Plan
    apply: ApplyResult | None
    metadata: Mapping[str, Any]

    @property
    def error(self) -> ConvergenceError | None:
        return self.apply.error if self.apply else None


ProviderFactory = Callable[[ConvergeSettings], ResourceProvider]
LoaderFactory = Callable[..., DeclarationLoader]


class ConvergenceService:
    """High level service wiring declarations, state, provider and executor."""

    def __init__(
        self,
        *,
        provider_factory: ProviderFactory | None = None,
        loader_factory: LoaderFactory | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._provider_factory = provider_factory
        self._loader_factory = loader_factory or DeclarationLoader
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

    # ------------------------------------------------------------------
    def plan(
        self, declarations: Sequence[Path], *, overrides: Mapping[str, Any] | None = None
    ) -> ConvergenceResult:
        """Diff the declarations against recorded state without touching the provider."""

        executor, settings = self._executor(declarations, overrides)
        plan = executor.plan()
        return ConvergenceResult(plan=plan, apply=None, metadata=self._metadata(executor, settings))

    def apply(
        self, declarations: Sequence[Path], *, overrides: Mapping[str, Any] | None = None
    ) -> ConvergenceResult:
        """Converge remote state to the declarations."""

        executor, settings = self._executor(declarations, overrides)
        result = executor.apply()
        return ConvergenceResult(
            plan=result.plan, apply=result, metadata=self._metadata(executor, settings)
        )

    def destroy(
        self, declarations: Sequence[Path], *, overrides: Mapping[str, Any] | None = None
    ) -> ConvergenceResult:
        """Remove every resource recorded in the state."""

        executor, settings = self._executor(declarations, overrides, require_graph=False)
        result = executor.destroy()
        return ConvergenceResult(
            plan=result.plan, apply=result, metadata=self._metadata(executor, settings)
        )

    def settings(
        self, declarations: Sequence[Path], *, overrides: Mapping[str, Any] | None = None
    ) -> ConvergeSettings:
        """Merge the declarations' ``settings:`` sections with ``overrides``."""

        return self._load(declarations, overrides)[1]

    # ------------------------------------------------------------------
    def _executor(
        self,
        declarations: Sequence[Path],
        overrides: Mapping[str, Any] | None,
        *,
        require_graph: bool = True,
    ) -> tuple[TopologicalExecutor, ConvergeSettings]:
        documents, settings = self._load(declarations, overrides)
        graph = ResourceGraph.build([])
        if require_graph:
            loader = self._loader_factory(zone_id=settings.zone_id)
            graph = build(loader.load(documents))

        provider = RetryingProvider(
            self._resolve_provider(settings),
            RetryPolicy(
                max_attempts=settings.retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            sleep=self._sleep,
        )
        executor = TopologicalExecutor(
            graph,
            StateStore(settings.state_path),
            default_handlers(provider, settings, self.cancel_event),
            settings=settings,
            cancel_event=self.cancel_event,
        )
        return executor, settings

    @staticmethod
    def _load(
        declarations: Sequence[Path], overrides: Mapping[str, Any] | None
    ) -> tuple[list[DeclarationDocument], ConvergeSettings]:
        documents = load_documents(declarations)
        settings = load_settings(
            [document.settings for document in documents],
            overrides,
            base_dir=documents[0].path.parent if documents else None,
        )
        return documents, settings

    def _resolve_provider(self, settings: ConvergeSettings) -> ResourceProvider:
        if self._provider_factory is None:
            raise ConvergenceError("No provider factory configured for convergence service")
        return self._provider_factory(settings)

    @staticmethod
    def _metadata(executor: TopologicalExecutor, settings: ConvergeSettings) -> dict[str, Any]:
        return {
            "state_path": str(settings.state_path),
            "zone_id": settings.zone_id,
            "resource_count": len(executor.graph),
        }


__all__ = ["ConvergenceResult", "ConvergenceService"]
