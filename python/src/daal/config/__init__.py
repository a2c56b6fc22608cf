from .logfire_config import get_logger, safe_span, setup_logfire

__all__ = ["get_logger", "safe_span", "setup_logfire"]
