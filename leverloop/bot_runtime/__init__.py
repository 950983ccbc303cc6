from .logging import JsonFormatter, setup_logger
from .loop import bootstrap_dependencies, run_leverage_loop
from .settings import AppSettings, load_keypair

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "bootstrap_dependencies",
    "load_keypair",
    "run_leverage_loop",
    "setup_logger",
]
