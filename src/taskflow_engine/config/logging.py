import structlog
import logging
import logging.handlers
import sys
from pathlib import Path
from taskflow_engine.config.settings import settings


class LogConfig:
    """Centralized logging configuration"""

    def __init__(self):
        self.project_root = self._get_project_root()
        self.logs_dir = self.project_root / "logs"
        self.logs_dir.mkdir(exist_ok=True)

        # Log file paths
        self.main_log = self.logs_dir / "taskflow.log"
        self.scheduler_log = self.logs_dir / "scheduler.log"
        self.runs_log = self.logs_dir / "runs.log"
        self.llm_log = self.logs_dir / "llm_calls.log"
        self.error_log = self.logs_dir / "errors.log"

        # Log levels
        self.log_level = logging.DEBUG if settings.debug else logging.INFO
        self.file_log_level = logging.DEBUG  # Always debug for files

        # Formatters
        self.detailed_formatter = logging.Formatter(
            '%(asctime)s | %(name)-20s | %(levelname)-8s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        self.simple_formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def _get_project_root(self) -> Path:
        """Get the project root directory"""
        current_file = Path(__file__).resolve()
        # Navigate up from src/taskflow_engine/config/logging.py to project root
        return current_file.parent.parent.parent.parent

    def create_rotating_handler(self, filepath: Path, max_bytes: int = 10*1024*1024, backup_count: int = 5) -> logging.Handler:
        """Create a rotating file handler with proper configuration"""
        handler = logging.handlers.RotatingFileHandler(
            filepath,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(self.file_log_level)
        handler.setFormatter(self.detailed_formatter)
        return handler

    def create_console_handler(self) -> logging.Handler:
        """Create console handler for stdout"""
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.log_level)

        # Use simple format for console in production, detailed in debug
        formatter = self.detailed_formatter if settings.debug else self.simple_formatter
        handler.setFormatter(formatter)
        return handler

    def create_error_handler(self) -> logging.Handler:
        """Create handler specifically for error logs"""
        handler = logging.handlers.RotatingFileHandler(
            self.error_log,
            maxBytes=5*1024*1024,
            backupCount=10,
            encoding='utf-8'
        )
        handler.setLevel(logging.ERROR)
        handler.setFormatter(self.detailed_formatter)
        return handler


def configure_logging():
    """Configure comprehensive logging for the entire application"""
    config = LogConfig()

    # Remove any existing handlers from root logger
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    # Configure root logger
    root_logger.setLevel(config.log_level)
    root_logger.addHandler(config.create_console_handler())
    root_logger.addHandler(config.create_rotating_handler(config.main_log))
    root_logger.addHandler(config.create_error_handler())

    # Configure specialized loggers
    setup_specialized_loggers(config)

    # Configure structlog
    configure_structlog()

    # Log startup message
    logger = structlog.get_logger("logging")
    logger.info("Logging system initialized",
                log_level=logging.getLevelName(config.log_level),
                logs_directory=str(config.logs_dir),
                main_log=str(config.main_log),
                debug_mode=settings.debug)


def _setup_component_logger(config: LogConfig, name: str, log_file: Path, level: int, console: bool = True):
    component_logger = logging.getLogger(name)
    component_logger.handlers.clear()
    component_logger.setLevel(level)
    component_logger.addHandler(config.create_rotating_handler(log_file))
    if console:
        component_logger.addHandler(config.create_console_handler())
    component_logger.addHandler(config.create_error_handler())
    component_logger.propagate = False


def setup_specialized_loggers(config: LogConfig):
    """Setup specialized loggers for different components"""

    # Trigger scheduler: every arm, disarm and firing
    _setup_component_logger(config, "scheduler", config.scheduler_log, logging.DEBUG)

    # Run lifecycle: transitions, node progress, input waits
    _setup_component_logger(config, "runs", config.runs_log, logging.DEBUG)

    # LLM ensemble attempts
    _setup_component_logger(config, "llm", config.llm_log, logging.DEBUG)

    # Database logger
    _setup_component_logger(config, "database", config.main_log, logging.INFO, console=False)

    # Queued-run dispatcher
    _setup_component_logger(config, "dispatcher", config.main_log, logging.INFO)


def configure_structlog():
    """Configure structlog with proper processors"""
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # Add appropriate renderer based on environment
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger for the given name"""
    return structlog.get_logger(name)
