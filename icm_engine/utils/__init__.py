from .cache import TTLCache, derivation_cache_key
from .logging_utils import BatchLoggerAdapter, CorrelationFilter, JsonFormatter, setup_logging
from .validation import load_rule_set, validate_rule_set
