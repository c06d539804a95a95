STATE_DIR_NAME = ".did_a_thing"
HOME_ENV_VAR = "DID_A_THING_HOME"
STORE_FILE = "store.yaml"
STORE_LOCK_FILE = "store.lock"
CONFIG_FILE = "config.yaml"
CONFIG_LOCK_FILE = "config.lock"
WINDOWS_LOCK_BYTES = 4096

SCHEMA_VERSION = 2
EXPORT_APP_TAG = "did-a-thing"

TASKS = "tasks"
PHASES = "phases"
TRANSITIONS = "transitions"
ALL_COLLECTIONS = (TASKS, PHASES, TRANSITIONS)

DEFAULT_PHASE_NAME = "Done"
MIN_MULTI_PHASES = 2

SORT_RECENT = "recent"
SORT_ALPHA = "alpha"
VALID_SORTS = {SORT_RECENT, SORT_ALPHA}
DEFAULT_SORT = SORT_RECENT
DEFAULT_LOG_LEVEL = "WARNING"
