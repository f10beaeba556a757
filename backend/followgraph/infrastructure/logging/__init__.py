from followgraph.infrastructure.logging.logging_config import (
    ContextFilter,
    HumanFormatter,
    StructuredFormatter,
    get_log_context,
    get_logger,
    log_context,
    set_log_level,
    setup_logging,
)

__all__ = [
    "ContextFilter",
    "HumanFormatter",
    "StructuredFormatter",
    "get_log_context",
    "get_logger",
    "log_context",
    "set_log_level",
    "setup_logging",
]
