__version__ = "1.0.0"
__title__ = "Scheduling Intelligence"
__description__ = "Appointment-scheduling insights and write-back approval engine"
__license__ = "MIT"

# Package-level imports for convenience
from scheduling_intel.core.config import get_settings
from scheduling_intel.core.database import get_db

__all__ = [
    "__version__",
    "__title__",
    "__description__",
    "__license__",
    "get_settings",
    "get_db"
]
