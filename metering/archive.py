from typing import List

from db.config import get_mongo_db
from .config import metering_config


class MeteringRunArchive:
    """Tick reports kept in MongoDB so a failed or partial run can be audited."""

    def __init__(self, collection):
        self.collection = collection

    def record(self, report) -> dict:
        document = report.to_dict()
        self.collection.insert_one(document)
        document.pop("_id", None)
        return document

    def recent(self, limit: int = 24) -> List[dict]:
        runs = list(self.collection.find({}).sort("hour_slot", -1).limit(limit))
        for run in runs:
            run.pop("_id", None)
        return runs


def get_run_archive() -> MeteringRunArchive:
    return MeteringRunArchive(get_mongo_db()[metering_config.archive_collection])
