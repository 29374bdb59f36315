"""CLI context management for the engine and shared state."""

from dataclasses import dataclass, field

from rapengine import RapEngine
from rapengine.core.config import EngineSettings


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Manages the engine lifecycle and output preferences.
    """

    settings: EngineSettings
    json_output: bool
    _engine: RapEngine | None = field(default=None, init=False, repr=False)

    @property
    def locale(self) -> str:
        return self.settings.default_locale

    def get_engine(self) -> RapEngine:
        """Get or create the engine (lazy initialization).

        Returns:
            RapEngine with the configured schema directory loaded
        """
        if self._engine is None:
            self._engine = RapEngine(settings=self.settings)
        return self._engine

    def close(self) -> None:
        """Close the engine if open."""
        if self._engine is not None:
            self._engine.close()
            self._engine = None
