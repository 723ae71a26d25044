"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    EXIT_WARNINGS = 3


class SpecifierKind(Enum):
    """Kinds of module specifiers found in import statements.

    Args:
        Enum (string): Specifier kinds.
    """

    URL = "url"
    BARE = "bare"
    RELATIVE = "relative"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    CDN_URL_PREFIX = "https://unpkg.com/"
    DEFAULT_VERSION = "latest"
    DEFAULT_ENTRY = "index.js"
    DEFAULT_TYPINGS = "index.d.ts"
    DEFAULT_CONTENT_TYPE = "text/plain"
    NODE_MODULES_DIR = "node_modules"
    PACKAGE_JSON_FILE = "package.json"
    PACKAGE_JSON_STUB = "{}"
    TYPES_SCOPE = "@types"
    TYPESCRIPT_LIB_SPECIFIER = "typescript/lib/lib.{lib}.js"
    JS_EXTENSIONS = ("js", "mjs")
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_LEVEL_ENV = "BARECDN_LOG_LEVEL"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
