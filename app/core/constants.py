"""Shared constants for deployments, the coin ledger and payment requests."""

# Deployment statuses
STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_STOPPED_BY_ADMIN = "stopped_by_admin"
STATUS_STOPPED_NO_COINS = "stopped_no_coins"

DEPLOYMENT_STATUSES = (
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_STOPPED_BY_ADMIN,
    STATUS_STOPPED_NO_COINS,
)

# Who asked for a stop, mapped to the status it leaves behind
INITIATOR_USER = "user"
INITIATOR_ADMIN = "admin"
INITIATOR_SCHEDULER = "scheduler"

STOP_STATUS_BY_INITIATOR = {
    INITIATOR_USER: STATUS_STOPPED,
    INITIATOR_ADMIN: STATUS_STOPPED_BY_ADMIN,
    INITIATOR_SCHEDULER: STATUS_STOPPED_NO_COINS,
}

# Transaction types
TX_CREDIT = "credit"
TX_DEPLOY = "deploy"
TX_TOPUP = "topup"
TX_DAILY = "daily"

# Payment request statuses
PAYMENT_PENDING = "pending"
PAYMENT_APPROVED = "approved"
PAYMENT_REJECTED = "rejected"

# Paths (relative to the template root) never copied into a bot instance
TEMPLATE_EXCLUDE_PATTERNS = (
    "node_modules",
    "session/*",
    "*/session/*",
    "temp/*",
    "*/temp/*",
    "cache/*",
    "*/cache/*",
    "*.db",
    "*.sqlite",
    "*.sqlite3",
)

# Shared dependency cache linked (not copied) into each instance
SHARED_DEPENDENCY_DIR = "node_modules"

ENV_FILENAME = ".env"
ECOSYSTEM_FILENAME = "ecosystem.config.js"

USERNAME_PATTERN = r"^[a-z0-9_]{3,30}$"
