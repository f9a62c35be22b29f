from datetime import datetime, timedelta, timezone

import pytest

from aws_ebs_snapshot_pruner import ApiError, PruneConfig, Snapshot, Volume

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_snapshot(sid, volume_id="vol-a", days=0, status="completed"):
    return Snapshot(snapshot_id=sid, volume_id=volume_id, start_time=BASE_TIME + timedelta(days=days), status=status)


def make_snapshots(count, volume_id="vol-a", prefix=None, status="completed"):
    prefix = prefix or f"snap-{volume_id}"
    return [make_snapshot(f"{prefix}-{i}", volume_id, days=i, status=status) for i in range(count)]


class FakeApi:
    def __init__(self, volume_ids, snapshots, fail_on_delete=None, error=None):
        self.volumes = [Volume(v) for v in volume_ids]
        self.snapshots = list(snapshots)
        self.fail_on_delete = fail_on_delete
        self.error = error or ApiError([("InvalidSnapshot.NotFound", "The snapshot does not exist.")])
        self.delete_attempts = []
        self.deleted = []

    def list_volumes(self):
        return list(self.volumes)

    def list_snapshots(self):
        return list(self.snapshots)

    def delete_snapshot(self, snapshot_id):
        self.delete_attempts.append(snapshot_id)
        if self.fail_on_delete is not None and len(self.delete_attempts) == self.fail_on_delete:
            raise self.error
        self.deleted.append(snapshot_id)


@pytest.fixture
def config_for():
    def _make(max_snapshots, **kwargs):
        return PruneConfig(max_snapshots=max_snapshots, **kwargs)
    return _make
