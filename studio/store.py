"""
Persistence for users, subscriptions, models, trainings and predictions.

Two backends share one interface: :class:`SqliteStore` for local development
and :class:`DynamoStore` for deployments on AWS. Subclasses only implement a
handful of table primitives (insert, get, select, update, counter
adjustments); the domain methods live on :class:`BaseStore`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("credits_remaining", "models_remaining")

# Primary key column of each table.
TABLE_KEYS = {
  "users": "email",
  "subscriptions": "user_id",
  "models": "id",
  "trainings": "id",
  "predictions": "id",
  "feedback": "id",
  "webhook_events": "id",
}

JSON_COLUMNS = {
  "trainings": ("input_params", "output"),
  "predictions": ("input", "output", "storage_urls", "liked_images"),
}

BOOL_COLUMNS = {
  "subscriptions": ("is_active",),
  "models": ("is_deleted",),
  "trainings": ("is_cancelled",),
  "predictions": ("is_deleted", "is_cancelled", "is_edit"),
}

SQLITE_SCHEMA = {
  "users": """
    CREATE TABLE IF NOT EXISTS users (
      email TEXT PRIMARY KEY,
      id TEXT UNIQUE NOT NULL,
      password_hash TEXT NOT NULL,
      created_at TEXT NOT NULL
    )
  """,
  "subscriptions": """
    CREATE TABLE IF NOT EXISTS subscriptions (
      user_id TEXT PRIMARY KEY,
      plan TEXT NOT NULL,
      credits_remaining INTEGER NOT NULL DEFAULT 0,
      models_remaining INTEGER NOT NULL DEFAULT 0,
      is_active INTEGER NOT NULL DEFAULT 1,
      subscription_start_date TEXT,
      subscription_end_date TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT
    )
  """,
  "models": """
    CREATE TABLE IF NOT EXISTS models (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      model_id TEXT NOT NULL,
      model_owner TEXT NOT NULL,
      display_name TEXT,
      visibility TEXT,
      hardware TEXT,
      status TEXT NOT NULL,
      zip_url TEXT,
      is_deleted INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL,
      updated_at TEXT
    )
  """,
  "trainings": """
    CREATE TABLE IF NOT EXISTS trainings (
      id TEXT PRIMARY KEY,
      model_id TEXT NOT NULL,
      user_id TEXT NOT NULL,
      training_id TEXT UNIQUE NOT NULL,
      status TEXT,
      zip_url TEXT,
      input_params TEXT,
      output TEXT,
      error TEXT,
      is_cancelled INTEGER NOT NULL DEFAULT 0,
      predict_time REAL,
      created_at TEXT NOT NULL,
      started_at TEXT,
      completed_at TEXT,
      updated_at TEXT
    )
  """,
  "predictions": """
    CREATE TABLE IF NOT EXISTS predictions (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      model_id TEXT,
      replicate_id TEXT,
      prompt TEXT,
      aspect_ratio TEXT,
      format TEXT,
      status TEXT,
      input TEXT,
      output TEXT,
      error TEXT,
      storage_urls TEXT,
      liked_images TEXT,
      caption TEXT,
      caption_error TEXT,
      is_deleted INTEGER NOT NULL DEFAULT 0,
      is_cancelled INTEGER NOT NULL DEFAULT 0,
      is_edit INTEGER NOT NULL DEFAULT 0,
      source_prediction_id TEXT,
      source_image_url TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT,
      completed_at TEXT
    )
  """,
  "feedback": """
    CREATE TABLE IF NOT EXISTS feedback (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      feedback TEXT NOT NULL,
      created_at TEXT NOT NULL
    )
  """,
  "webhook_events": """
    CREATE TABLE IF NOT EXISTS webhook_events (
      id TEXT PRIMARY KEY,
      created_at TEXT NOT NULL
    )
  """,
}

SQLITE_INDEXES = (
  "CREATE INDEX IF NOT EXISTS idx_predictions_replicate ON predictions (replicate_id)",
  "CREATE INDEX IF NOT EXISTS idx_predictions_user ON predictions (user_id, created_at)",
  "CREATE INDEX IF NOT EXISTS idx_models_user ON models (user_id, created_at)",
)


class StoreError(RuntimeError):
  """Raised when the persistence backend fails."""


def utcnow() -> str:
  return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
  return str(uuid.uuid4())


def _sort_newest(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
  return sorted(items, key=lambda item: item.get("created_at") or "", reverse=True)


class BaseStore:
  """Domain operations expressed on top of backend primitives."""

  # Primitives ---------------------------------------------------------

  def _insert(self, table: str, record: Dict[str, Any]) -> bool:
    """Insert ``record``; return False when the primary key already exists."""
    raise NotImplementedError

  def _get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _select(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
    """Return rows matching all equality filters (list values mean IN), newest first."""
    raise NotImplementedError

  def _update(self, table: str, key: str, fields: Dict[str, Any]) -> bool:
    raise NotImplementedError

  def _adjust_counter(self, user_id: str, field: str, delta: int) -> Optional[int]:
    """Add ``delta`` to a subscription counter; decrements require an active, positive balance."""
    raise NotImplementedError

  # Users --------------------------------------------------------------

  def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    return self._get("users", email.strip().lower())

  def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    rows = self._select("users", id=user_id)
    return rows[0] if rows else None

  def create_user(self, email: str, password_hash: str) -> Optional[Dict[str, Any]]:
    """Persist a new user; return ``None`` when the email is taken."""
    record = {
      "id": new_id(),
      "email": email.strip().lower(),
      "password_hash": password_hash,
      "created_at": utcnow(),
    }
    if not self._insert("users", record):
      return None
    return record

  # Subscriptions ------------------------------------------------------

  def get_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._get("subscriptions", user_id)

  def get_active_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
    subscription = self.get_subscription(user_id)
    if subscription and subscription.get("is_active"):
      return subscription
    return None

  def upsert_subscription(
    self,
    user_id: str,
    *,
    plan: str,
    credits: int,
    models: int,
    end_date: str,
  ) -> Dict[str, Any]:
    now = utcnow()
    fields = {
      "plan": plan,
      "credits_remaining": credits,
      "models_remaining": models,
      "is_active": True,
      "subscription_start_date": now,
      "subscription_end_date": end_date,
      "updated_at": now,
    }
    if self.get_subscription(user_id) is None:
      self._insert("subscriptions", {"user_id": user_id, "created_at": now, **fields})
    else:
      self._update("subscriptions", user_id, fields)
    return self.get_subscription(user_id) or {}

  def deactivate_subscription(self, user_id: str) -> bool:
    return self._update("subscriptions", user_id, {"is_active": False, "updated_at": utcnow()})

  def consume(self, user_id: str, field: str) -> Optional[int]:
    """Atomically take one unit of ``field``; return the new balance or ``None``."""
    if field not in COUNTER_FIELDS:
      raise ValueError(f"Unknown counter: {field}")
    return self._adjust_counter(user_id, field, -1)

  def refund(self, user_id: str, field: str) -> Optional[int]:
    if field not in COUNTER_FIELDS:
      raise ValueError(f"Unknown counter: {field}")
    return self._adjust_counter(user_id, field, 1)

  # Models -------------------------------------------------------------

  def create_model(self, user_id: str, **fields: Any) -> Dict[str, Any]:
    record = {
      "id": new_id(),
      "user_id": user_id,
      "status": "created",
      "is_deleted": False,
      "created_at": utcnow(),
      **fields,
    }
    self._insert("models", record)
    return record

  def get_model(self, model_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    model = self._get("models", model_id)
    if model is None or (user_id and model.get("user_id") != user_id):
      return None
    return model

  def find_model(self, owner: str, name: str, user_id: str) -> Optional[Dict[str, Any]]:
    rows = self._select("models", model_owner=owner, model_id=name, user_id=user_id, is_deleted=False)
    return rows[0] if rows else None

  def list_models(self, user_id: str, *, is_deleted: bool = False) -> List[Dict[str, Any]]:
    return self._select("models", user_id=user_id, is_deleted=is_deleted)

  def update_model(self, model_id: str, **fields: Any) -> bool:
    fields.setdefault("updated_at", utcnow())
    return self._update("models", model_id, fields)

  # Trainings ----------------------------------------------------------

  def create_training(self, model_id: str, user_id: str, training_id: str, **fields: Any) -> Dict[str, Any]:
    record = {
      "id": new_id(),
      "model_id": model_id,
      "user_id": user_id,
      "training_id": training_id,
      "is_cancelled": False,
      "created_at": utcnow(),
      **fields,
    }
    self._insert("trainings", record)
    return record

  def get_training_by_replicate_id(self, training_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    filters: Dict[str, Any] = {"training_id": training_id}
    if user_id:
      filters["user_id"] = user_id
    rows = self._select("trainings", **filters)
    return rows[0] if rows else None

  def list_trainings(self, model_id: str, *, include_cancelled: bool = False) -> List[Dict[str, Any]]:
    trainings = self._select("trainings", model_id=model_id)
    if include_cancelled:
      return trainings
    return [training for training in trainings if not training.get("is_cancelled")]

  def list_pending_trainings(self) -> List[Dict[str, Any]]:
    return self._select("trainings", status=["starting", "queued", "processing"], is_cancelled=False)

  def update_training(self, record_id: str, **fields: Any) -> bool:
    fields.setdefault("updated_at", utcnow())
    return self._update("trainings", record_id, fields)

  # Predictions --------------------------------------------------------

  def create_prediction(self, user_id: str, replicate_id: str, **fields: Any) -> Dict[str, Any]:
    record = {
      "id": new_id(),
      "user_id": user_id,
      "replicate_id": replicate_id,
      "is_deleted": False,
      "is_cancelled": False,
      "is_edit": False,
      "created_at": utcnow(),
      **fields,
    }
    self._insert("predictions", record)
    return record

  def get_prediction(self, prediction_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    prediction = self._get("predictions", prediction_id)
    if prediction is None or (user_id and prediction.get("user_id") != user_id):
      return None
    return prediction

  def get_prediction_by_replicate_id(self, replicate_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    filters: Dict[str, Any] = {"replicate_id": replicate_id}
    if user_id:
      filters["user_id"] = user_id
    rows = self._select("predictions", **filters)
    return rows[0] if rows else None

  def list_predictions(self, user_id: Optional[str] = None, **filters: Any) -> List[Dict[str, Any]]:
    if user_id:
      filters["user_id"] = user_id
    return self._select("predictions", **filters)

  def update_prediction(self, prediction_id: str, **fields: Any) -> bool:
    fields.setdefault("updated_at", utcnow())
    return self._update("predictions", prediction_id, fields)

  # Misc ---------------------------------------------------------------

  def add_feedback(self, user_id: str, feedback: str) -> Dict[str, Any]:
    record = {"id": new_id(), "user_id": user_id, "feedback": feedback, "created_at": utcnow()}
    self._insert("feedback", record)
    return record

  def has_webhook_event(self, webhook_id: str) -> bool:
    return self._get("webhook_events", webhook_id) is not None

  def record_webhook_event(self, webhook_id: str) -> bool:
    """Remember a webhook delivery id; False means it was already processed."""
    return self._insert("webhook_events", {"id": webhook_id, "created_at": utcnow()})


class SqliteStore(BaseStore):
  """SQLite-backed store used for local development and tests."""

  def __init__(self, db_path: Path) -> None:
    self.db_path = Path(db_path)
    self._columns: Dict[str, List[str]] = {}
    self.initialise()

  def _connect(self) -> sqlite3.Connection:
    """Return a SQLite connection with row access by name."""
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(self.db_path)
    conn.row_factory = sqlite3.Row
    return conn

  def initialise(self) -> None:
    """Ensure every table exists with the expected schema."""
    conn = self._connect()
    with conn:
      for ddl in SQLITE_SCHEMA.values():
        conn.execute(ddl)
      for ddl in SQLITE_INDEXES:
        conn.execute(ddl)
      for table in SQLITE_SCHEMA:
        self._columns[table] = [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]
    conn.close()

  def _encode(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
    known = self._columns[table]
    encoded: Dict[str, Any] = {}
    for key, value in record.items():
      if key not in known:
        raise StoreError(f"Unknown column {table}.{key}")
      if key in JSON_COLUMNS.get(table, ()) and value is not None:
        value = json.dumps(value)
      elif key in BOOL_COLUMNS.get(table, ()) and value is not None:
        value = 1 if value else 0
      encoded[key] = value
    return encoded

  def _decode(self, table: str, row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    for key in JSON_COLUMNS.get(table, ()):
      if record.get(key) is not None:
        record[key] = json.loads(record[key])
    for key in BOOL_COLUMNS.get(table, ()):
      if key in record and record[key] is not None:
        record[key] = bool(record[key])
    return record

  def _insert(self, table: str, record: Dict[str, Any]) -> bool:
    encoded = self._encode(table, record)
    columns = ", ".join(encoded)
    placeholders = ", ".join("?" for _ in encoded)
    conn = self._connect()
    try:
      with conn:
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(encoded.values()))
    except sqlite3.IntegrityError:
      return False
    except sqlite3.DatabaseError as exc:
      raise StoreError(f"Insert into {table} failed: {exc}") from exc
    finally:
      conn.close()
    return True

  def _get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
    conn = self._connect()
    try:
      row = conn.execute(f"SELECT * FROM {table} WHERE {TABLE_KEYS[table]} = ?", (key,)).fetchone()
    finally:
      conn.close()
    return self._decode(table, row) if row is not None else None

  def _select(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
    encoded = self._encode(table, {key: value for key, value in filters.items() if not isinstance(value, list)})
    clauses = [f"{key} = ?" if value is not None else f"{key} IS NULL" for key, value in encoded.items()]
    params: List[Any] = [value for value in encoded.values() if value is not None]
    for key, value in filters.items():
      if isinstance(value, list):
        if key not in self._columns[table]:
          raise StoreError(f"Unknown column {table}.{key}")
        if not value:
          return []
        clauses.append(f"{key} IN ({', '.join('?' for _ in value)})")
        params.extend(value)

    sql = f"SELECT * FROM {table}"
    if clauses:
      sql += " WHERE " + " AND ".join(clauses)
    if "created_at" in self._columns[table]:
      sql += " ORDER BY created_at DESC"

    conn = self._connect()
    try:
      rows = conn.execute(sql, params).fetchall()
    finally:
      conn.close()
    return [self._decode(table, row) for row in rows]

  def _update(self, table: str, key: str, fields: Dict[str, Any]) -> bool:
    if not fields:
      return False
    encoded = self._encode(table, fields)
    assignments = ", ".join(f"{column} = ?" for column in encoded)
    conn = self._connect()
    try:
      with conn:
        cursor = conn.execute(
          f"UPDATE {table} SET {assignments} WHERE {TABLE_KEYS[table]} = ?",
          (*encoded.values(), key),
        )
    except sqlite3.DatabaseError as exc:
      raise StoreError(f"Update of {table} failed: {exc}") from exc
    finally:
      conn.close()
    return cursor.rowcount > 0

  def _adjust_counter(self, user_id: str, field: str, delta: int) -> Optional[int]:
    guard = " AND is_active = 1 AND {0} > 0".format(field) if delta < 0 else ""
    conn = self._connect()
    try:
      with conn:
        cursor = conn.execute(
          f"UPDATE subscriptions SET {field} = {field} + ?, updated_at = ? WHERE user_id = ?{guard}",
          (delta, utcnow(), user_id),
        )
        if cursor.rowcount == 0:
          return None
        row = conn.execute(f"SELECT {field} FROM subscriptions WHERE user_id = ?", (user_id,)).fetchone()
    finally:
      conn.close()
    return int(row[field]) if row is not None else None


def _to_dynamo_compatible(value: Any) -> Any:
  """Convert native Python types into structures acceptable by DynamoDB."""
  if isinstance(value, float):
    return Decimal(str(value))
  if isinstance(value, Decimal):
    return value
  if isinstance(value, dict):
    return {
      str(key): _to_dynamo_compatible(val)
      for key, val in value.items()
      if val is not None
    }
  if isinstance(value, list):
    return [_to_dynamo_compatible(item) for item in value if item is not None]
  return value


def _from_dynamo(value: Any) -> Any:
  """Recursively convert DynamoDB Decimals into JSON friendly primitives."""
  if isinstance(value, Decimal):
    if value % 1 == 0:
      return int(value)
    return float(value)
  if isinstance(value, dict):
    return {key: _from_dynamo(val) for key, val in value.items()}
  if isinstance(value, list):
    return [_from_dynamo(item) for item in value]
  return value


class DynamoStore(BaseStore):
  """
  DynamoDB-backed store. One table per entity, named ``<prefix><entity>``,
  each keyed by the column in :data:`TABLE_KEYS`.

  Selections are scans with a filter expression, which is adequate for the
  per-user volumes this service handles.
  """

  def __init__(self, table_prefix: str, region: Optional[str] = None, resource=None) -> None:
    resource_kwargs: Dict[str, Any] = {}
    if region:
      resource_kwargs["region_name"] = region
    self.resource = resource or boto3.resource("dynamodb", **resource_kwargs)
    self.tables = {name: self.resource.Table(f"{table_prefix}{name}") for name in TABLE_KEYS}

  def _insert(self, table: str, record: Dict[str, Any]) -> bool:
    key = TABLE_KEYS[table]
    try:
      self.tables[table].put_item(
        Item=_to_dynamo_compatible(record),
        ConditionExpression=Attr(key).not_exists(),
      )
    except ClientError as exc:
      if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
        return False
      raise StoreError(f"Insert into {table} failed: {exc}") from exc
    return True

  def _get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
    try:
      response = self.tables[table].get_item(Key={TABLE_KEYS[table]: key})
    except ClientError as exc:
      raise StoreError(f"Read from {table} failed: {exc}") from exc
    item = response.get("Item")
    return _from_dynamo(item) if item else None

  def _select(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
    condition = None
    for key, value in filters.items():
      if isinstance(value, list):
        if not value:
          return []
        clause = Attr(key).is_in(value)
      elif value is None:
        clause = Attr(key).not_exists()
      else:
        clause = Attr(key).eq(_to_dynamo_compatible(value))
      condition = clause if condition is None else condition & clause

    scan_kwargs: Dict[str, Any] = {}
    if condition is not None:
      scan_kwargs["FilterExpression"] = condition

    items: List[Dict[str, Any]] = []
    try:
      while True:
        response = self.tables[table].scan(**scan_kwargs)
        items.extend(_from_dynamo(item) for item in response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
          break
        scan_kwargs["ExclusiveStartKey"] = last_key
    except ClientError as exc:
      raise StoreError(f"Scan of {table} failed: {exc}") from exc
    return _sort_newest(items)

  def _update(self, table: str, key: str, fields: Dict[str, Any]) -> bool:
    if not fields:
      return False
    key_name = TABLE_KEYS[table]
    names = {f"#f{index}": column for index, column in enumerate(fields)}
    set_parts: List[str] = []
    remove_parts: List[str] = []
    values: Dict[str, Any] = {}
    for index, (column, value) in enumerate(fields.items()):
      if value is None:
        remove_parts.append(f"#f{index}")
      else:
        set_parts.append(f"#f{index} = :v{index}")
        values[f":v{index}"] = _to_dynamo_compatible(value)

    expression = ""
    if set_parts:
      expression += "SET " + ", ".join(set_parts)
    if remove_parts:
      expression += " REMOVE " + ", ".join(remove_parts)

    update_kwargs: Dict[str, Any] = {
      "Key": {key_name: key},
      "UpdateExpression": expression.strip(),
      "ExpressionAttributeNames": names,
      "ConditionExpression": Attr(key_name).exists(),
    }
    if values:
      update_kwargs["ExpressionAttributeValues"] = values
    try:
      self.tables[table].update_item(**update_kwargs)
    except ClientError as exc:
      if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
        return False
      raise StoreError(f"Update of {table} failed: {exc}") from exc
    return True

  def _adjust_counter(self, user_id: str, field: str, delta: int) -> Optional[int]:
    condition = Attr("user_id").exists()
    if delta < 0:
      condition = condition & Attr("is_active").eq(True) & Attr(field).gt(0)
    try:
      response = self.tables["subscriptions"].update_item(
        Key={"user_id": user_id},
        UpdateExpression="SET #counter = #counter + :delta, updated_at = :now",
        ExpressionAttributeNames={"#counter": field},
        ExpressionAttributeValues={":delta": delta, ":now": utcnow()},
        ConditionExpression=condition,
        ReturnValues="UPDATED_NEW",
      )
    except ClientError as exc:
      if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
        return None
      raise StoreError(f"Counter update failed: {exc}") from exc
    return _from_dynamo(response.get("Attributes", {}).get(field))


__all__ = [
  "BaseStore",
  "DynamoStore",
  "SqliteStore",
  "StoreError",
  "utcnow",
]
