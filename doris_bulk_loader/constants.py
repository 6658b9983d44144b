"""Stream Load protocol constants."""

COLUMNS_KEY = "columns"
LABEL_KEY = "label"
FORMAT_KEY = "format"
FIELD_DELIMITER_KEY = "column_separator"
LINE_DELIMITER_KEY = "line_delimiter"
STRIP_OUTER_ARRAY_KEY = "strip_outer_array"
EXPECT_KEY = "Expect"

JSON = "json"
CSV = "csv"
SUPPORTED_FORMATS = (CSV, JSON)

FIELD_DELIMITER_DEFAULT = ","
LINE_DELIMITER_DEFAULT = "\n"
# JSON rows are elements of one array, so they are separated by commas
LINE_DELIMITER_JSON = ","
EXPECT_DEFAULT = "100-continue"
STRIP_OUTER_ARRAY_DEFAULT = True
NULL_VALUE = "\\N"

DORIS_DELETE_SIGN = "__DORIS_DELETE_SIGN__"
DELETE_SIGN_TRUE = "1"
DELETE_SIGN_FALSE = "0"

LABEL_SUFFIX = "DorisBulkLoad"
LABEL_MAX_LENGTH = 128

LOAD_URL_PATTERN = "http://{host}:{port}/api/{database}/{table}/_stream_load"
JSON_ARRAY_START = "["
JSON_ARRAY_END = "]"

# Headers owned by the protocol; user supplied extras may not override them
RESERVED_HEADERS = frozenset(
    {
        COLUMNS_KEY,
        LABEL_KEY,
        FORMAT_KEY,
        FIELD_DELIMITER_KEY,
        LINE_DELIMITER_KEY,
        STRIP_OUTER_ARRAY_KEY,
        "expect",
        "authorization",
        "transfer-encoding",
        "content-length",
        "host",
    }
)

# Status strings reported by the store in the Stream Load response
STATUS_SUCCESS = "Success"
STATUS_PUBLISH_TIMEOUT = "Publish Timeout"
STATUS_LABEL_ALREADY_EXISTS = "Label Already Exists"
STATUS_FAIL = "Fail"
EXISTING_JOB_FINISHED = "FINISHED"
