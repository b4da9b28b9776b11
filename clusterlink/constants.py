"""Constants and configuration defaults for the cluster link."""

# --- Version ---
VERSION = "0.3.0"

# --- Wire format ---
CLUSTER_ENCODING = "latin-1"  # Single-byte, every byte decodes
LINE_TERMINATOR = "\r\n"
READ_CHUNK_SIZE = 4096

# --- Cluster defaults ---
DEFAULT_CLUSTER_PORT = 7300
CONFIG_FILE = "~/.clusterlink.json"

# --- Connection timing (seconds) ---
CONNECT_TIMEOUT = 10.0  # Interactive /connect
WRITE_TIMEOUT = 5.0  # Bound on drain() for a single line
SEND_RECONNECT_TIMEOUT = 4.0  # Quick reconnect from the send path
WORKER_CONNECT_TIMEOUT = 5.0  # Each reconnection worker attempt

# --- Reconnection backoff ---
BACKOFF_INITIAL = 1.5
BACKOFF_MAX = 60.0
BACKOFF_JITTER_MIN = 0.10  # 10-20% of the current delay
BACKOFF_JITTER_MAX = 0.20

# --- Keepalive ---
KEEPALIVE_INTERVAL = 30.0
KEEPALIVE_INACTIVITY = 180.0  # 3 minutes without traffic or keepalive
KEEPALIVE_LINE = " "

# --- Login / command replay ---
REPLAY_GRACE = 3.0  # Wait this long for inbound activity before sending
REPLAY_ACTIVITY_WINDOW = 2.0  # Activity younger than this counts as "seen"
REPLAY_POLL_INTERVAL = 0.2
LOGIN_PROMPT_TIMEOUT = 3.0
LOGIN_DELAY = 0.15  # After the credential
COMMAND_DELAY = 0.18  # Between default commands
RECONNECT_REPLAY_TIMEOUT = 10.0
LOGIN_PROMPT_PATTERN = r"\b(login|call|username)\s*:"
COMMENT_MARKER = "#"

# --- Local relay server ---
RELAY_HOST = "127.0.0.1"
RELAY_PORT = 7373
RELAY_DRAIN_TIMEOUT = 2.0
RELAY_BANNER = (
    "Welcome to the clusterlink local server",
    "Type commands and press Enter.",
)

# Debug level system (0-6), can be changed at runtime
# 0 = No debugging
# 2 = Important events
# 3 = Connection state changes, replay steps
# 4 = Line traffic (RX/TX lines, relay peers)
# 5 = Byte level previews
# 6 = Everything including config loading
DEBUG_LEVEL = 0
