#!/usr/bin/env python3
"""
aws_ebs_snapshot_pruner.py

Purpose:
  Keep EBS snapshot counts under the account quota. Once the number of
  snapshots owned by the account reaches --max-snapshots (the AWS default
  quota is 500), keep the most recent --keep-pct of the completed snapshots
  of every volume and delete the rest.

Logic Overview:
  1. Describe all volumes and all snapshots owned by --owner-id (default: self)
  2. Do nothing unless at least one volume exists AND the snapshot count
     equals --max-snapshots
  3. For each volume:
       * eligible = completed snapshots of that volume
       * keep = floor(keep_pct * len(eligible))
       * sort newest first, delete the tail starting at index keep - 1
         (or at index keep with --exact-keep)
  4. Any AWS error aborts the run; deletions already issued stay applied.

  The default slice keeps one snapshot fewer than the computed keep count
  and deletes the single oldest snapshot when the keep count is 0. Existing
  schedules rely on that; --exact-keep keeps exactly keep.

Credentials:
  AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY (and optional AWS_SESSION_TOKEN)
  from the environment, else the usual boto3 chain (--profile, instance role).

Permissions:
  - ec2:DescribeVolumes, ec2:DescribeSnapshots, ec2:DeleteSnapshot

Examples:
  python aws_ebs_snapshot_pruner.py
  python aws_ebs_snapshot_pruner.py --region us-east-1 --keep-pct 0.5
  python aws_ebs_snapshot_pruner.py --profile prod --max-snapshots 1000 --exact-keep

Exit Codes:
  0 success (including nothing to do)
  1 AWS/API error
  2 unexpected error (also argparse usage errors)
"""
from __future__ import annotations
import argparse
import math
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

# AWS default for the number of snapshots an account may hold
DEFAULT_MAX_SNAPSHOTS = 500
DEFAULT_KEEP_PCT = 0.40
COMPLETED = "completed"

EXIT_OK = 0
EXIT_AWS_ERROR = 1
EXIT_UNEXPECTED = 2


class ApiError(Exception):
    """An EC2 call failed. Carries one or more (code, message) pairs."""

    def __init__(self, errors: Sequence[Tuple[str, str]]):
        self.errors = list(errors)
        super().__init__("; ".join(f"{code}: {msg}" for code, msg in self.errors))

    @classmethod
    def from_boto(cls, exc: Exception) -> ApiError:
        if isinstance(exc, ClientError):
            err = exc.response.get("Error", {})
            return cls([(err.get("Code", "Unknown"), err.get("Message", str(exc)))])
        return cls([(type(exc).__name__, str(exc))])


@dataclass(frozen=True)
class Volume:
    volume_id: str

    @classmethod
    def from_api(cls, item: Mapping) -> Volume:
        return cls(volume_id=item["VolumeId"])


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    volume_id: Optional[str]
    start_time: datetime
    status: str

    @classmethod
    def from_api(cls, item: Mapping) -> Snapshot:
        return cls(
            snapshot_id=item["SnapshotId"],
            volume_id=item.get("VolumeId"),
            start_time=item["StartTime"],
            status=item.get("State"),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED


@dataclass(frozen=True)
class PruneConfig:
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    profile: Optional[str] = None
    region: Optional[str] = None
    owner_id: str = "self"
    max_snapshots: int = DEFAULT_MAX_SNAPSHOTS
    keep_pct: float = DEFAULT_KEEP_PCT
    exact_keep: bool = False


@dataclass
class PruneReport:
    volume_count: int = 0
    snapshot_count: int = 0
    skipped_reason: Optional[str] = None
    kept: Dict[str, List[str]] = field(default_factory=dict)
    deleted: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return sum(len(ids) for ids in self.deleted.values())


class Ec2SnapshotApi:
    """Thin EC2 wrapper. Single describe calls, no pagination, no retries."""

    def __init__(self, ec2, owner_id: str = "self"):
        self.ec2 = ec2
        self.owner_id = owner_id

    @classmethod
    def from_config(cls, config: PruneConfig) -> Ec2SnapshotApi:
        session_args = {}
        if config.access_key_id and config.secret_access_key:
            session_args['aws_access_key_id'] = config.access_key_id
            session_args['aws_secret_access_key'] = config.secret_access_key
            if config.session_token:
                session_args['aws_session_token'] = config.session_token
        if config.profile:
            session_args['profile_name'] = config.profile
        try:
            session = boto3.Session(**session_args) if session_args else boto3.Session()
            ec2 = session.client('ec2', region_name=config.region) if config.region else session.client('ec2')
        except (BotoCoreError, ClientError) as e:
            raise ApiError.from_boto(e) from e
        return cls(ec2, owner_id=config.owner_id)

    def list_volumes(self) -> List[Volume]:
        try:
            resp = self.ec2.describe_volumes()
        except (BotoCoreError, ClientError) as e:
            raise ApiError.from_boto(e) from e
        return [Volume.from_api(v) for v in resp.get('Volumes', [])]

    def list_snapshots(self) -> List[Snapshot]:
        try:
            resp = self.ec2.describe_snapshots(OwnerIds=[self.owner_id])
        except (BotoCoreError, ClientError) as e:
            raise ApiError.from_boto(e) from e
        return [Snapshot.from_api(s) for s in resp.get('Snapshots', [])]

    def delete_snapshot(self, snapshot_id: str) -> None:
        try:
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        except (BotoCoreError, ClientError) as e:
            raise ApiError.from_boto(e) from e


def select_for_deletion(snapshots: Sequence[Snapshot], keep_count: int, exact: bool = False) -> List[Snapshot]:
    """Return the snapshots to delete, newest-first order.

    Nothing is selected when there are no more snapshots than keep_count.
    Otherwise the list is sorted by start_time descending (stable, so equal
    timestamps keep their input order) and the tail is returned. The legacy
    tail starts at keep_count - 1, which for keep_count == 0 is index -1:
    only the oldest snapshot. With exact=True the tail starts at keep_count.
    """
    keep_count = max(keep_count, 0)
    if len(snapshots) <= keep_count:
        return []
    ordered = sorted(snapshots, key=lambda s: s.start_time, reverse=True)
    start = keep_count if exact else keep_count - 1
    return ordered[start:]


def keep_count_for(eligible: int, keep_pct: float) -> int:
    return max(int(math.floor(keep_pct * eligible)), 0)


def eligible_snapshots(snapshots: Sequence[Snapshot], volume_id: str) -> List[Snapshot]:
    return [s for s in snapshots if s.is_completed and s.volume_id == volume_id]


def prune(api, config: PruneConfig, selector=select_for_deletion) -> PruneReport:
    volumes = api.list_volumes()
    snapshots = api.list_snapshots()
    report = PruneReport(volume_count=len(volumes), snapshot_count=len(snapshots))

    if not volumes:
        report.skipped_reason = 'no-volumes'
        print("Not doing anything as no EBS volumes were found.")
    if len(snapshots) < config.max_snapshots:
        report.skipped_reason = report.skipped_reason or 'below-max-snapshots'
        print(f"Not doing anything as max number of EBS snapshots [{config.max_snapshots}] has not been reached.  "
              f"There are currently {len(snapshots)} snapshots.")
    elif len(snapshots) > config.max_snapshots:
        report.skipped_reason = report.skipped_reason or 'above-max-snapshots'
    if report.skipped_reason:
        return report

    print(f"Total Number of EBS volumes is: {len(volumes)}")
    print(f"Keeping {config.keep_pct * 100}% of snapshots per volume")

    for volume in volumes:
        vid = volume.volume_id
        eligible = eligible_snapshots(snapshots, vid)
        if not eligible:
            print(f"Skipping volume [{vid}] as it has no snapshots.")
            continue
        keep = keep_count_for(len(eligible), config.keep_pct)
        print(f"Keeping {keep} snapshots for volume [{vid}]")
        to_delete = selector(eligible, keep, exact=config.exact_keep)
        doomed = {s.snapshot_id for s in to_delete}
        report.kept[vid] = [s.snapshot_id for s in eligible if s.snapshot_id not in doomed]
        report.deleted[vid] = []
        if not to_delete:
            continue
        print(f"Deleting {len(to_delete)} snapshots...")
        for snap in to_delete:
            print(f"Deleting snapshot [{snap.snapshot_id}] for volume [{snap.volume_id}] with creation date: {snap.start_time}")
            api.delete_snapshot(snap.snapshot_id)
            report.deleted[vid].append(snap.snapshot_id)

    print(f"Deleted {report.deleted_count} snapshots across {len(volumes)} volumes.")
    return report


def keep_pct_arg(value: str) -> float:
    try:
        pct = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value}")
    if not 0.0 <= pct <= 1.0:
        raise argparse.ArgumentTypeError(f"must be between 0 and 1: {value}")
    return pct


def positive_int_arg(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return n


def parse_args(argv: Optional[Sequence[str]] = None):
    p = argparse.ArgumentParser(description="Prune EBS snapshots per volume once the account snapshot quota is reached")
    p.add_argument("--profile", help="AWS profile name")
    p.add_argument("--region", help="AWS region (default: configured)")
    p.add_argument("--owner-id", default="self", help="Snapshot owner account ID (default: self)")
    p.add_argument("--max-snapshots", type=positive_int_arg, default=DEFAULT_MAX_SNAPSHOTS,
                   help=f"Only prune when the account holds exactly this many snapshots (default: {DEFAULT_MAX_SNAPSHOTS})")
    p.add_argument("--keep-pct", type=keep_pct_arg, default=DEFAULT_KEEP_PCT,
                   help=f"Fraction of completed snapshots to keep per volume (default: {DEFAULT_KEEP_PCT})")
    p.add_argument("--exact-keep", action="store_true",
                   help="Keep exactly floor(keep_pct * n) snapshots instead of one fewer")
    return p.parse_args(argv)


def build_config(args, environ: Mapping[str, str]) -> PruneConfig:
    return PruneConfig(
        access_key_id=environ.get("AWS_ACCESS_KEY_ID") or None,
        secret_access_key=environ.get("AWS_SECRET_ACCESS_KEY") or None,
        session_token=environ.get("AWS_SESSION_TOKEN") or None,
        profile=args.profile,
        region=args.region,
        owner_id=args.owner_id,
        max_snapshots=args.max_snapshots,
        keep_pct=args.keep_pct,
        exact_keep=args.exact_keep,
    )


def run(config: PruneConfig, api_factory=Ec2SnapshotApi.from_config) -> int:
    try:
        api = api_factory(config)
        prune(api, config)
    except ApiError as e:
        print("AWS Error occurred")
        for code, msg in e.errors:
            print(f"code: {code}, msg: {msg}")
        return EXIT_AWS_ERROR
    except Exception as e:
        print(f"Unexpected Error: {e!r}")
        return EXIT_UNEXPECTED
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config = build_config(args, os.environ)
    return run(config)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
