import pandas as pd
from doris_bulk_loader import AuthOptions, Destination, DorisBulkLoader, LoadOptions
import logging

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# Test data
data = pd.DataFrame([
    {"id": 1, "name": "knight", "score": 9.5},
    {"id": 2, "name": "ranger", "score": 8.0},
    {"id": 3, "name": "cleric", "score": None},
    {"id": 4, "name": "rogue", "score": 7.25},
    {"id": 5, "name": "thief", "score": 6.0},
])

# Create loader
destination = Destination("test_database", "test_table", ["id", "name", "score"])
loader = DorisBulkLoader(
    destination,
    auth_options=AuthOptions.from_env(),
    load_options=LoadOptions(format="csv", batch_size=2),
)

results = loader.load_block(data)
for result in results:
    print(f"Label: {result.label}, loaded: {result.loaded_rows}, filtered: {result.filtered_rows}")
print(f"Stats: {loader.stats.as_dict()}")
