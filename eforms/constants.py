import enum

APP_NAME = "EForms"
VERSION = "1.0.0"
SCHEMA_VERSION = "1"


class UserAction(enum.Enum):
    BLOCK = "block"
    UNBLOCK = "unblock"
    MAKE_ADMIN = "make_admin"
    REMOVE_ADMIN = "remove_admin"
