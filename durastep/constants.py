"""Engine-wide defaults."""

DEFAULT_MAX_CONCURRENCY = 6
DEFAULT_MAX_CONDITION_ITERATIONS = 100
DEFAULT_CONDITION_DELAY_SECONDS = 5.0

ROOT_NAMESPACE = ""
NAMESPACE_SEPARATOR = "/"

SIGNAL_TOPIC = "durastep.signals"
WILDCARD_ERROR_KINDS = frozenset({"*", "States.ALL"})
