"""CloudTrail Projection Updater Lambda.

Keeps the ``projection.accountid.values`` and ``projection.region.values``
properties of the organization CloudTrail Glue table in line with the account
folders present in the log bucket and the regions available to this account.
"""

import copy
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Set

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Boto3 clients
boto3_config = Config(
    retries={"max_attempts": 10, "mode": "standard"},
    connect_timeout=10,
    read_timeout=30,
)
s3_client = boto3.client("s3", config=boto3_config)
ec2_client = boto3.client("ec2", config=boto3_config)
glue_client = boto3.client("glue", config=boto3_config)

DELIMITER = "/"
LIST_MAX_KEYS = 1000

# Stop issuing calls when less than this is left of the invocation
DEADLINE_MARGIN_SECONDS = 10

ACCOUNTID = "accountid"
REGION = "region"
DIMENSIONS = (ACCOUNTID, REGION)

# update_table() replaces the whole table with TableInput, and only these
# fields are accepted there. Anything left out is emptied on the table.
UPDATE_FIELDS = (
    "Name",
    "Description",
    "Owner",
    "LastAccessTime",
    "LastAnalyzedTime",
    "Retention",
    "StorageDescriptor",
    "PartitionKeys",
    "ViewOriginalText",
    "ViewExpandedText",
    "TableType",
    "Parameters",
    "TargetTable",
)

_ACCOUNT_ID_RE = re.compile(r"[0-9]+")


def property_key(dimension: str) -> str:
    """Return the Glue table property holding the values for a dimension."""
    return f"projection.{dimension}.values"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProjectionUpdateError(Exception):
    """Base class for errors that abort a reconciliation run."""


class TransientIOError(ProjectionUpdateError):
    """An AWS call failed after botocore exhausted its retries."""


class NotFoundError(ProjectionUpdateError):
    """The Glue table (or its database) does not exist."""


class SchemaError(ProjectionUpdateError):
    """The Glue table is missing an expected projection property."""


class ConfigError(ProjectionUpdateError):
    """The function environment is missing or has an invalid setting."""


class DeadlineExceededError(ProjectionUpdateError):
    """Not enough invocation time left to continue safely."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectionConfig:
    bucket: str
    prefix: str
    database: str
    table: str

    def __post_init__(self):
        for name in ("bucket", "prefix", "database", "table"):
            if not getattr(self, name):
                raise ConfigError(f"Missing configuration value: {name}")
        if self.prefix.endswith(DELIMITER):
            raise ConfigError(
                f"Bucket prefix must not end with '{DELIMITER}': {self.prefix}"
            )

    @classmethod
    def from_env(cls, environ=None) -> "ProjectionConfig":
        """Build the configuration from the Lambda environment variables."""
        environ = os.environ if environ is None else environ
        return cls(
            bucket=environ.get("S3_BUCKET", ""),
            prefix=environ.get("BUCKET_PREFIX", ""),
            database=environ.get("GLUE_DATABASE", ""),
            table=environ.get("GLUE_TABLE", ""),
        )


class Deadline:
    """Tracks the remaining invocation time of a Lambda context."""

    def __init__(self, context=None, margin_seconds: int = DEADLINE_MARGIN_SECONDS):
        self.context = context
        self.margin_ms = margin_seconds * 1000

    def remaining_ms(self) -> Optional[int]:
        get_remaining = getattr(self.context, "get_remaining_time_in_millis", None)
        if get_remaining is None:
            return None
        return get_remaining()

    def check(self, step: str) -> None:
        remaining = self.remaining_ms()
        if remaining is not None and remaining < self.margin_ms:
            raise DeadlineExceededError(
                f"Only {remaining} ms left before {step}, abandoning the run"
            )


# ---------------------------------------------------------------------------
# Object listing
# ---------------------------------------------------------------------------


def list_child_folders(s3, bucket: str, prefix: str) -> Set[str]:
    """List the folder names one level below ``prefix`` in ``bucket``.

    :return: Set of folder names, without the listing prefix or the trailing
        delimiter
    """
    folder_prefix = f"{prefix}{DELIMITER}"
    folders = set()
    try:
        paginator = s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(
            Bucket=bucket,
            Prefix=folder_prefix,
            MaxKeys=LIST_MAX_KEYS,
            Delimiter=DELIMITER,
        ):
            if "CommonPrefixes" not in page:
                continue
            for common_prefix in page["CommonPrefixes"]:
                # Prefix looks like o-abcd1234/AWSLogs/0123456789/
                folder = common_prefix["Prefix"]
                if folder.startswith(folder_prefix):
                    folder = folder[len(folder_prefix):]
                folders.add(folder.rstrip(DELIMITER))
    except (ClientError, BotoCoreError) as e:
        raise TransientIOError(
            f"Failed to list s3://{bucket}/{folder_prefix}: {str(e)}"
        ) from e
    return folders


def extract_account_ids(folders: Iterable[str]) -> Set[str]:
    """Keep the folder names that look like account IDs, warn about the rest."""
    account_ids = set()
    for folder in folders:
        account_id = folder.strip().strip(DELIMITER)
        if not _ACCOUNT_ID_RE.fullmatch(account_id):
            logger.warning(f"Unexpected account ID folder, skipping: {folder!r}")
            continue
        account_ids.add(account_id)
    return account_ids


# ---------------------------------------------------------------------------
# Region enumeration
# ---------------------------------------------------------------------------


def list_regions(ec2) -> Set[str]:
    """Return the regions available to this account."""
    try:
        response = ec2.describe_regions()
    except (ClientError, BotoCoreError) as e:
        raise TransientIOError(f"Failed to describe regions: {str(e)}") from e
    return {region["RegionName"] for region in response.get("Regions", [])}


# ---------------------------------------------------------------------------
# Catalog projection store
# ---------------------------------------------------------------------------


def split_values(value_string: str) -> Set[str]:
    """Split a comma-separated projection value, ignoring blanks."""
    return {value.strip() for value in value_string.split(",") if value.strip()}


def join_values(values: Iterable[str]) -> str:
    return ",".join(sorted(values))


@dataclass
class TableSnapshot:
    database: str
    name: str
    table: Dict = field(default_factory=dict)

    @property
    def parameters(self) -> Dict[str, str]:
        return self.table.get("Parameters", {})

    def values(self, dimension: str) -> Set[str]:
        return split_values(self.parameters[property_key(dimension)])

    def with_values(self, dimension: str, values: Iterable[str]) -> "TableSnapshot":
        """Return a copy with only the projection values of ``dimension`` replaced."""
        new_table = copy.deepcopy(self.table)
        new_table.setdefault("Parameters", {})[property_key(dimension)] = join_values(
            values
        )
        return TableSnapshot(self.database, self.name, new_table)


class ProjectionStore:
    """Read/write contract for the catalog holding the projection properties.

    Backends only have to support reading a whole table and replacing a whole
    table. Callers always write back a snapshot they read.
    """

    def read(self, database: str, table: str) -> TableSnapshot:
        raise NotImplementedError

    def write(self, database: str, table: str, snapshot: TableSnapshot) -> None:
        raise NotImplementedError


class GlueProjectionStore(ProjectionStore):
    def __init__(self, glue):
        self.glue = glue

    def read(self, database: str, table: str) -> TableSnapshot:
        try:
            response = self.glue.get_table(DatabaseName=database, Name=table)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "EntityNotFoundException":
                raise NotFoundError(
                    f"Glue table {database}.{table} does not exist"
                ) from e
            raise TransientIOError(
                f"Failed to read Glue table {database}.{table}: {str(e)}"
            ) from e
        except BotoCoreError as e:
            raise TransientIOError(
                f"Failed to read Glue table {database}.{table}: {str(e)}"
            ) from e

        snapshot = TableSnapshot(database, table, response["Table"])
        for dimension in DIMENSIONS:
            key = property_key(dimension)
            if key not in snapshot.parameters:
                raise SchemaError(
                    f"Could not find {key} in the Glue table {database}.{table}"
                )
        return snapshot

    def write(self, database: str, table: str, snapshot: TableSnapshot) -> None:
        table_input = {
            name: snapshot.table[name] for name in UPDATE_FIELDS if name in snapshot.table
        }
        try:
            self.glue.update_table(DatabaseName=database, TableInput=table_input)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(
                f"Failed to update Glue table {database}.{table}: {str(e)}"
            ) from e


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@dataclass
class DimensionResult:
    dimension: str
    property_name: str
    values: List[str]
    previous_values: List[str]
    changed: bool
    dry_run: bool = False

    def to_dict(self) -> Dict:
        result = asdict(self)
        result["added"] = sorted(set(self.values) - set(self.previous_values))
        result["removed"] = sorted(set(self.previous_values) - set(self.values))
        return result


class Reconciler:
    def __init__(self, config: ProjectionConfig, s3, ec2, store: ProjectionStore,
                 deadline: Optional[Deadline] = None):
        self.config = config
        self.s3 = s3
        self.ec2 = ec2
        self.store = store
        self.deadline = deadline or Deadline()

    def desired_account_ids(self) -> Set[str]:
        self.deadline.check("listing account folders")
        folders = list_child_folders(self.s3, self.config.bucket, self.config.prefix)
        account_ids = extract_account_ids(folders)
        logger.info(f"List of account IDs: {sorted(account_ids)}")
        return account_ids

    def desired_regions(self) -> Set[str]:
        self.deadline.check("listing regions")
        regions = list_regions(self.ec2)
        logger.info(f"List of regions: {sorted(regions)}")
        return regions

    def reconcile_dimension(self, dimension: str, desired: Set[str],
                            dry_run: bool = False) -> DimensionResult:
        """Set projection.{dimension}.values to ``desired`` if it differs."""
        database, table = self.config.database, self.config.table
        key = property_key(dimension)

        self.deadline.check(f"reading {database}.{table}")
        snapshot = self.store.read(database, table)
        current = snapshot.values(dimension)
        logger.info(
            f"Glue table {database}.{table} property {key} currently has "
            f"the values: {sorted(current)}"
        )

        result = DimensionResult(
            dimension=dimension,
            property_name=key,
            values=sorted(desired),
            previous_values=sorted(current),
            changed=current != desired,
            dry_run=dry_run,
        )
        if not result.changed:
            logger.info(f"Skipping update for property {key}, nothing to change.")
            return result
        if dry_run:
            logger.info(f"Dry run: would update property {key} with: {join_values(desired)}")
            return result

        self.deadline.check(f"updating {database}.{table}")
        self.store.write(database, table, snapshot.with_values(dimension, desired))
        logger.info(
            f"Successfully updated the Glue table {database}.{table} "
            f"property {key} with: {join_values(desired)}"
        )
        return result

    def run(self, dry_run: bool = False) -> List[DimensionResult]:
        # Both sets are computed before anything is written
        desired = {
            ACCOUNTID: self.desired_account_ids(),
            REGION: self.desired_regions(),
        }
        return [
            self.reconcile_dimension(dimension, desired[dimension], dry_run=dry_run)
            for dimension in DIMENSIONS
        ]


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event, context):
    event = event or {}
    dry_run = bool(event.get("dry_run", False))
    logger.info(f"Lambda invoked (dry_run={dry_run})")

    try:
        config = ProjectionConfig.from_env()
        logger.info(
            f"Reconciling s3://{config.bucket}/{config.prefix}/ into "
            f"Glue table {config.database}.{config.table}"
        )
        reconciler = Reconciler(
            config,
            s3_client,
            ec2_client,
            GlueProjectionStore(glue_client),
            deadline=Deadline(context),
        )
        results = reconciler.run(dry_run=dry_run)
    except ProjectionUpdateError as e:
        logger.error(f"Projection update failed: {str(e)}", exc_info=True)
        raise

    updated = [r.dimension for r in results if r.changed and not r.dry_run]
    return {
        "statusCode": 200,
        "body": {
            "message": (
                f"Updated {', '.join(updated)}" if updated else "No projection changes applied"
            ),
            "dry_run": dry_run,
            "dimensions": [r.to_dict() for r in results],
        },
    }
