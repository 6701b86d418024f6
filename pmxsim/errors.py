from typing import Optional


class PmxSimError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(PmxSimError):
    """Malformed model declaration or event schedule.

    Raised before any simulation starts.
    """


class ModelError(PmxSimError):
    """An event, derivative or capture references something undeclared."""


class SimulationError(PmxSimError):
    """Numerical failure while advancing one individual.

    The population driver isolates these per individual.
    """

    def __init__(self, message: str, individual_id: Optional[object] = None, time: Optional[float] = None):
        self.message = message
        self.individual_id = individual_id
        self.time = time
        super().__init__(self._render())

    def _render(self) -> str:
        where = []
        if self.individual_id is not None:
            where.append(f"ID={self.individual_id}")
        if self.time is not None:
            where.append(f"time={self.time:g}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"

    def tagged(self, individual_id: object, time: Optional[float] = None) -> "SimulationError":
        """Return a copy carrying the individual id (and time, if not known yet)."""
        return SimulationError(
            self.message,
            individual_id=individual_id,
            time=self.time if self.time is not None else time,
        )
