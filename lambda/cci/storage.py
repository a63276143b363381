"""
Storage layer - DynamoDB operations for policyholders, premiums, and claims.

Every write is version-checked: a record read at version N can only be
written back if the stored copy is still at version N. A lost race
surfaces as StateConflictError and the caller must re-fetch.
All database interaction is isolated here.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Type, TypeVar

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import ClientError
from pydantic import BaseModel

from cci.models import (
    Claim,
    PersistenceError,
    Policyholder,
    Premium,
    StateConflictError,
)
from cci.config import (
    AWS_CONNECT_TIMEOUT_SECONDS,
    AWS_MAX_ATTEMPTS,
    AWS_READ_TIMEOUT_SECONDS,
    CLAIMS_TABLE,
    CLAIMS_USER_INDEX,
    POLICYHOLDERS_TABLE,
    PREMIUMS_TABLE,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_CONDITION_FAILED = "ConditionalCheckFailedException"


# --- DynamoDB resource cache ---
# Initialized once per container, reused across invocations.

_dynamodb = None
_tables: dict[str, Any] = {}


def _get_table(name: str):
    """Lazy-initialized DynamoDB table with caching."""
    global _dynamodb

    if name in _tables:
        return _tables[name]

    if _dynamodb is None:
        _dynamodb = boto3.resource(
            "dynamodb",
            config=Config(
                connect_timeout=AWS_CONNECT_TIMEOUT_SECONDS,
                read_timeout=AWS_READ_TIMEOUT_SECONDS,
                retries={"max_attempts": AWS_MAX_ATTEMPTS},
            ),
        )
    _tables[name] = _dynamodb.Table(name)
    return _tables[name]


# --- Policyholders ---

def fetch_policyholder(user_id: str) -> Policyholder | None:
    """
    Retrieves policyholder by user ID. Returns None if absent.

    Raises:
        PersistenceError: If DynamoDB read fails.
    """
    return _get(POLICYHOLDERS_TABLE, {"user_id": user_id}, Policyholder)


def save_policyholder(policyholder: Policyholder) -> Policyholder:
    """
    Writes policyholder if the stored copy is still at policyholder.version.

    Returns the record as stored (version incremented).

    Raises:
        StateConflictError: If another writer got there first.
        PersistenceError: If DynamoDB write fails.
    """
    return _put_versioned(POLICYHOLDERS_TABLE, "user_id", policyholder)


# --- Premiums ---

def fetch_premium(user_id: str) -> Premium | None:
    """
    Retrieves the premium owned by user_id. Returns None if absent.

    Raises:
        PersistenceError: If DynamoDB read fails.
    """
    return _get(PREMIUMS_TABLE, {"user_id": user_id}, Premium)


def save_premium(premium: Premium) -> Premium:
    """
    Version-checked premium write. See save_policyholder.

    Raises:
        StateConflictError: If another writer got there first.
        PersistenceError: If DynamoDB write fails.
    """
    return _put_versioned(PREMIUMS_TABLE, "user_id", premium)


def remove_premium(user_id: str) -> None:
    """
    Removes the premium owned by user_id. Deleting a missing premium is a no-op.

    Raises:
        PersistenceError: If DynamoDB delete fails.
    """
    try:
        _get_table(PREMIUMS_TABLE).delete_item(Key={"user_id": user_id})
    except Exception as e:
        raise PersistenceError(f"Failed to delete premium for {user_id}: {e}")


def list_premiums() -> list[Premium]:
    """
    Every premium record.

    Raises:
        PersistenceError: If DynamoDB scan fails.
    """
    return _scan(PREMIUMS_TABLE, Premium)


# --- Claims ---

def fetch_claim(claim_id: str) -> Claim | None:
    """
    Retrieves claim by ID. Returns None if absent.

    Raises:
        PersistenceError: If DynamoDB read fails.
    """
    return _get(CLAIMS_TABLE, {"claim_id": claim_id}, Claim)


def save_claim(claim: Claim) -> Claim:
    """
    Version-checked claim write. A new claim (version 0) must not exist yet.

    Raises:
        StateConflictError: If another writer got there first.
        PersistenceError: If DynamoDB write fails.
    """
    return _put_versioned(CLAIMS_TABLE, "claim_id", claim)


def remove_claim(claim: Claim) -> None:
    """
    Removes claim if the stored copy is still at claim.version.

    Raises:
        StateConflictError: If the claim changed since it was read.
        PersistenceError: If DynamoDB delete fails.
    """
    try:
        _get_table(CLAIMS_TABLE).delete_item(
            Key={"claim_id": claim.claim_id},
            ConditionExpression="#v = :expected",
            ExpressionAttributeNames={"#v": "version"},
            ExpressionAttributeValues={":expected": claim.version},
        )
    except ClientError as e:
        if _is_condition_failure(e):
            raise StateConflictError(f"Claim {claim.claim_id} changed since it was read")
        raise PersistenceError(f"Failed to delete claim {claim.claim_id}: {e}")
    except Exception as e:
        raise PersistenceError(f"Failed to delete claim {claim.claim_id}: {e}")


def list_claims() -> list[Claim]:
    """
    Every claim record.

    Raises:
        PersistenceError: If DynamoDB scan fails.
    """
    return _scan(CLAIMS_TABLE, Claim)


def list_claims_for_user(user_id: str) -> list[Claim]:
    """
    Claims filed by user_id, newest first.

    Raises:
        PersistenceError: If DynamoDB query fails.
    """
    try:
        table = _get_table(CLAIMS_TABLE)
        kwargs: dict[str, Any] = {
            "IndexName": CLAIMS_USER_INDEX,
            "KeyConditionExpression": Key("user_id").eq(user_id),
            "ScanIndexForward": False,
        }
        items: list[dict] = []
        while True:
            response = table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return [Claim(**item) for item in items]
    except Exception as e:
        raise PersistenceError(f"Failed to list claims for {user_id}: {e}")


def clear_table_cache() -> None:
    """Clears cached DynamoDB resource. Testing only."""
    global _dynamodb
    _dynamodb = None
    _tables.clear()


# --- Internal ---

def _get(table_name: str, key: dict, model: Type[M]) -> M | None:
    try:
        response = _get_table(table_name).get_item(Key=key)
        if "Item" not in response:
            return None
        return model(**response["Item"])
    except Exception as e:
        raise PersistenceError(f"Failed to retrieve {table_name} item {key}: {e}")


def _put_versioned(table_name: str, key_name: str, record: M) -> M:
    expected = record.version
    stored = record.model_copy(update={"version": expected + 1})
    key_value = getattr(record, key_name)

    if expected == 0:
        condition = {
            "ConditionExpression": "attribute_not_exists(#k)",
            "ExpressionAttributeNames": {"#k": key_name},
        }
    else:
        condition = {
            "ConditionExpression": "#v = :expected",
            "ExpressionAttributeNames": {"#v": "version"},
            "ExpressionAttributeValues": {":expected": expected},
        }

    try:
        _get_table(table_name).put_item(
            Item=_to_dynamodb(stored.model_dump(mode="json")),
            **condition,
        )
        return stored
    except ClientError as e:
        if _is_condition_failure(e):
            logger.info("Version conflict on %s %s at version %d", table_name, key_value, expected)
            raise StateConflictError(
                f"{table_name} record {key_value} changed since it was read (version {expected})"
            )
        logger.error("DynamoDB write to %s failed: %s", table_name, e)
        raise PersistenceError(f"Failed to save {table_name} record {key_value}: {e}")
    except Exception as e:
        logger.error("DynamoDB write to %s failed: %s", table_name, e)
        raise PersistenceError(f"Failed to save {table_name} record {key_value}: {e}")


def _scan(table_name: str, model: Type[M]) -> list[M]:
    try:
        table = _get_table(table_name)
        kwargs: dict[str, Any] = {}
        items: list[dict] = []
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return [model(**item) for item in items]
    except Exception as e:
        raise PersistenceError(f"Failed to scan {table_name}: {e}")


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == _CONDITION_FAILED


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)
