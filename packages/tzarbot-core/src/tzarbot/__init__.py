"""TzarBot - distributed neuroevolution orchestrator."""

__all__ = ["NetworkGenome", "OrchestratorConfig", "OrchestratorService"]
__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy imports so the CLI starts without loading numpy or aiosqlite."""
    if name == "OrchestratorConfig":
        from tzarbot.config import OrchestratorConfig

        return OrchestratorConfig
    if name == "OrchestratorService":
        from tzarbot.training.orchestrator import OrchestratorService

        return OrchestratorService
    if name == "NetworkGenome":
        from tzarbot.genome.model import NetworkGenome

        return NetworkGenome
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
