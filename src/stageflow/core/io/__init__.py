from .fs import ensure_dir
from .json import read_json, dump_json
from .csv import write_csv

__all__ = [
    "ensure_dir",
    "read_json",
    "dump_json",
    "write_csv",
]
