from .config_manager import ConfigManager
from .settings import EngineSettings, configure_logging, load_settings
