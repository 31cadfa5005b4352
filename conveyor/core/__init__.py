# Core module exports
from conveyor.core.config import Settings, settings, get_settings
from conveyor.core.logging import (
    configure_logging,
    get_logger,
    bind_context,
    clear_context,
    unbind_context,
)
from conveyor.core.context import Context
