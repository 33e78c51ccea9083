"""Constants for the Surplus Manager integration."""

DOMAIN = "surplus_manager"

# Required settings
CONF_REFRESH_INTERVAL = "refresh_interval"
CONF_PEAK_PRODUCTION_POWER = "peak_production_power"

# Settings that are either a literal value or an entity id
CONF_MIN_STORAGE_SOC = "min_storage_soc"
CONF_MAX_STORAGE_SOC = "max_storage_soc"

# Input entity bindings
CONF_PRODUCTION_POWER_ENTITY = "production_power_entity"
CONF_GRID_POWER_ENTITY = "grid_power_entity"  # W, negative = feed-in
CONF_STORAGE_SOC_ENTITY = "storage_soc_entity"
CONF_STORAGE_POWER_ENTITY = "storage_power_entity"  # W, negative = charging
CONF_ELECTRICITY_PRICE_ENTITY = "electricity_price_entity"

# Optional settings
CONF_INITIAL_DELAY = "initial_delay"
CONF_MIN_AVAILABLE_SURPLUS = "min_available_surplus"
CONF_TOLERATED_POWER_DRAW = "tolerated_power_draw"
CONF_TOGGLE_ON_NEGATIVE_PRICE = "toggle_on_negative_price"
CONF_ENABLE_INVERTER_LIMITING_HEURISTIC = "enable_inverter_limiting_heuristic"

# Output channels
CONF_OUTPUT_CHANNELS = "output_channels"
CONF_CHANNEL_ID = "id"
CONF_CHANNEL_NAME = "name"
CONF_PRIORITY = "priority"
CONF_LOAD_POWER = "load_power"
CONF_SWITCHING_POWER = "switching_power"
CONF_MIN_RUNTIME_MINUTES = "min_runtime_minutes"
CONF_MIN_COOLDOWN_MINUTES = "min_cooldown_minutes"
CONF_MAX_ELECTRICITY_PRICE = "max_electricity_price"
CONF_TARGET_ENTITY = "target_entity"

# Defaults
DEFAULT_REFRESH_INTERVAL = 30
DEFAULT_INITIAL_DELAY = 0
DEFAULT_MIN_STORAGE_SOC = 30
DEFAULT_MAX_STORAGE_SOC = 100
DEFAULT_MIN_AVAILABLE_SURPLUS = 0
DEFAULT_TOLERATED_POWER_DRAW = 0
DEFAULT_TOGGLE_ON_NEGATIVE_PRICE = False
DEFAULT_ENABLE_INVERTER_LIMITING_HEURISTIC = False

MIN_REFRESH_INTERVAL = 10  # seconds

# Manager status values exposed to the host
STATUS_INITIALIZING = "initializing"
STATUS_READY = "ready"
STATUS_NOT_READY = "not_ready"
STATUS_ERROR = "error"
STATUS_OFFLINE = "offline"
MANAGER_STATUSES = [
    STATUS_INITIALIZING,
    STATUS_READY,
    STATUS_NOT_READY,
    STATUS_ERROR,
    STATUS_OFFLINE,
]

# hass.data keys
DATA_EVENT_SUBSCRIBER = "event_subscriber"

SERVICE_REEVALUATE = "reevaluate"
ATTR_ENTRY_ID = "entry_id"

ATTR_PRIORITY = "priority"
ATTR_LOAD_POWER = "load_power"
ATTR_SWITCHING_POWER = "switching_power"
ATTR_LAST_ACTIVATION = "last_activation"
ATTR_LAST_DEACTIVATION = "last_deactivation"
ATTR_TARGET_ENTITY = "target_entity"

INTEGRATION_VERSION = "1.0.0"

# Target entities are driven through the generic on/off services
TARGET_SERVICE_DOMAIN = "homeassistant"
