"""pg_repack multi-user privilege isolation harness.

Provisions three non-superuser roles, runs pg_repack as one of them under
a concurrent write load, and checks that the other two can neither read
the intermediate table nor the change log at any phase of the run.
"""

from .config import ScenarioConfig
from .errors import ConfigError, HarnessError, SetupError, SupervisionError
from .probe import AccessProbe, ProbeOutcome, ProbeResult
from .scenario import Phase, ScenarioResult, ScenarioRunner, Verdict

__all__: list[str] = [
    "AccessProbe",
    "ConfigError",
    "HarnessError",
    "Phase",
    "ProbeOutcome",
    "ProbeResult",
    "ScenarioConfig",
    "ScenarioResult",
    "ScenarioRunner",
    "SetupError",
    "SupervisionError",
    "Verdict",
]

__version__ = "0.1.0"
