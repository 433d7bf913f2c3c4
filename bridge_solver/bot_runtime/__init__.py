from .components import SolverComponents, build_components, build_storage
from .logging import JsonFormatter, setup_logger
from .loop import bootstrap_dependencies, run_order_intake, run_solver_loop, try_resume_order_intake
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "SolverComponents",
    "bootstrap_dependencies",
    "build_components",
    "build_storage",
    "run_order_intake",
    "run_solver_loop",
    "setup_logger",
    "try_resume_order_intake",
]
