from doris_bulk_loader import (
    AuthOptions,
    Destination,
    DorisBulkLoader,
    LoadOptions,
    StoreRejection,
    fetch_error_log,
)
import logging

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# The table must be a unique key table with merge-on-write enabled
destination = Destination("test_database", "test_users", ["id", "name"])
auth_options = AuthOptions.from_env()
load_options = LoadOptions(
    format="json",
    strip_outer_array=False,
    merge_on_write=True,
    flush_interval=5.0,
    headers={"max_filter_ratio": "0.1"},
)

try:
    with DorisBulkLoader(destination, auth_options, load_options) as loader:
        loader.write({"id": 1, "name": "Alice"})
        loader.write({"id": 2, "name": "Bob"})
        loader.write({"id": 3, "name": "Carol"})
        # Remove a row written by an earlier run
        loader.write({"id": 42, "name": None}, delete=True)
    print(f"Stats: {loader.stats.as_dict()}")
    for result in loader.stats.results:
        if result.partial:
            print(fetch_error_log(result.error_url, auth_options))
except StoreRejection as e:
    print(f"Load rejected: {e}")
    if e.result.error_url:
        print(fetch_error_log(e.result.error_url, auth_options))
