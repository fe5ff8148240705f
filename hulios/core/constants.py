"""Fixed paths, ports and timings shared by the HULIOS components."""

# ---------- Relay ----------

TOR_USER = "tor"
TOR_BINARY = "tor"
TOR_DATA_DIR = "/tmp/hulios_tor_data"
TORRC_PATH = "/tmp/hulios_torrc"
TOR_LOG_PATH = "/tmp/tor_debug.log"
TOR_PID_FILE = "/tmp/hulios_tor.pid"

SOCKS_PORT = 9050
TRANS_PORT = 9051
DNS_PORT = 9061
VIRTUAL_ADDR_NETWORK = "10.66.0.0/255.255.0.0"

# Flat wait instead of parsing bootstrap progress
BOOTSTRAP_WAIT_SECONDS = 10

# ---------- Watcher ----------

WATCHER_GRACE_SECONDS = 30
WATCHER_INTERVAL_SECONDS = 10
WATCHER_PID_FILE = "/run/hulios_watcher.pid"
WATCHER_STOP_TIMEOUT_SECONDS = 5

# ---------- DNS ----------

RESOLV_PATH = "/etc/resolv.conf"
RESOLV_BACKUP = "/tmp/hulios_resolv.conf.backup"
RESOLVED_STUB = "/run/systemd/resolve/stub-resolv.conf"
RESOLV_CANDIDATES = (
    "/run/systemd/resolve/resolv.conf",
    "/run/NetworkManager/resolv.conf",
    RESOLV_PATH,
)
RESOLV_MARKER = "# HULIOS - Tor DNS"

# ---------- Orchestration ----------

LOCK_FILE = "/run/hulios.lock"
LOCK_TIMEOUT_SECONDS = 5
RESTART_PAUSE_SECONDS = 2

# ---------- Logging / status ----------

LOG_FILE = "/var/log/hulios.log"
APP_NAME = "HULIOS"
STATUS_URL = "https://check.torproject.org/api/ip"
FALLBACK_IP_URL = "https://ifconfig.me/ip"
STATUS_TIMEOUT_SECONDS = 10
