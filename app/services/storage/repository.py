"""Table repositories exposing find/create/update/upsert/count over sqlite."""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Iterable, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel

from .middleware import QueryParams

if TYPE_CHECKING:
    from .base import StorageBase

ModelT = TypeVar("ModelT", bound=BaseModel)

OrderBy = Union[tuple[str, str], Sequence[tuple[str, str]]]


class RecordNotFound(LookupError):
    """Raised when an update targets a row that does not exist."""


def _encode_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


class Repository(Generic[ModelT]):
    """One table, addressed with Prisma-style ``where`` dictionaries.

    ``where`` maps column names to a value (equality, ``None`` for IS NULL) or
    to ``{"in": [...]}`` / ``{"not": value}``. Every public call is handed to the
    storage middleware chain before it reaches sqlite.
    """

    model_name: ClassVar[str]
    table: ClassVar[str]
    model: ClassVar[type[BaseModel]]
    columns: ClassVar[tuple[str, ...]]
    json_columns: ClassVar[frozenset[str]] = frozenset()
    bool_columns: ClassVar[frozenset[str]] = frozenset()
    datetime_columns: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at"})

    def __init__(self, storage: StorageBase) -> None:
        self._storage = storage

    # -- public store interface -------------------------------------------------

    def find_unique(self, where: dict[str, Any]) -> Optional[ModelT]:
        return self._run("find_unique", {"where": where}, self._find_first)

    def find_first(self, where: dict[str, Any], order_by: Optional[OrderBy] = None) -> Optional[ModelT]:
        return self._run("find_first", {"where": where, "order_by": order_by}, self._find_first)

    def find_many(
        self,
        where: Optional[dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
    ) -> list[ModelT]:
        args = {"where": where or {}, "order_by": order_by, "skip": skip, "take": take}
        return self._run("find_many", args, self._find_many)

    def count(self, where: Optional[dict[str, Any]] = None) -> int:
        return self._run("count", {"where": where or {}}, self._count)

    def create(self, data: dict[str, Any]) -> ModelT:
        return self._run("create", {"data": data}, self._create)

    def update(self, where: dict[str, Any], data: dict[str, Any]) -> ModelT:
        return self._run("update", {"where": where, "data": data}, self._update)

    def upsert(self, where: dict[str, Any], create: dict[str, Any], update: dict[str, Any]) -> ModelT:
        return self._run("upsert", {"where": where, "create": create, "update": update}, self._upsert)

    # -- operations executed at the end of the chain -------------------------------

    def _run(self, action: str, args: dict[str, Any], operation: Any) -> Any:
        return self._storage.dispatch(QueryParams(model=self.model_name, action=action, args=args), operation)

    def _find_first(self, params: QueryParams) -> Optional[ModelT]:
        rows = self._select(params.args["where"], params.args.get("order_by"), None, 1)
        return self._row_to_model(rows[0]) if rows else None

    def _find_many(self, params: QueryParams) -> list[ModelT]:
        args = params.args
        rows = self._select(args["where"], args.get("order_by"), args.get("skip"), args.get("take"))
        return [self._row_to_model(row) for row in rows]

    def _count(self, params: QueryParams) -> int:
        clause, values = self._compile_where(params.args["where"])
        with self._storage.connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {self.table}{clause}", values).fetchone()
        return int(row[0] if row else 0)

    def _create(self, params: QueryParams) -> ModelT:
        return self._insert(params.args["data"])

    def _update(self, params: QueryParams) -> ModelT:
        updated = self._update_rows(params.args["where"], params.args["data"])
        if updated is None:
            raise RecordNotFound(f"{self.model_name} matching {params.args['where']!r} not found")
        return updated

    def _upsert(self, params: QueryParams) -> ModelT:
        updated = self._update_rows(params.args["where"], params.args["update"])
        if updated is not None:
            return updated
        return self._insert({**params.args["where"], **params.args["create"]})

    # -- sql helpers -------------------------------------------------------------

    def _insert(self, data: dict[str, Any]) -> ModelT:
        now = dt.datetime.now(dt.timezone.utc)
        payload = {"id": uuid.uuid4().hex, **self._defaults(), **data}
        payload.setdefault("created_at", now)
        payload["updated_at"] = now
        self._check_columns(payload)
        names = list(payload)
        placeholders = ", ".join("?" for _ in names)
        with self._storage.connect() as conn:
            conn.execute(
                f"INSERT INTO {self.table} ({', '.join(self._quote(n) for n in names)}) VALUES ({placeholders})",
                [self._encode(name, payload[name]) for name in names],
            )
            row = conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (payload["id"],)).fetchone()
        return self._row_to_model(row)

    def _update_rows(self, where: dict[str, Any], data: dict[str, Any]) -> Optional[ModelT]:
        changes = {**data, "updated_at": dt.datetime.now(dt.timezone.utc)}
        changes.pop("id", None)
        self._check_columns(changes)
        clause, values = self._compile_where(where)
        with self._storage.connect() as conn:
            row = conn.execute(f"SELECT id FROM {self.table}{clause} LIMIT 1", values).fetchone()
            if row is None:
                return None
            assignments = ", ".join(f"{self._quote(name)} = ?" for name in changes)
            conn.execute(
                f"UPDATE {self.table} SET {assignments} WHERE id = ?",
                [self._encode(name, value) for name, value in changes.items()] + [row["id"]],
            )
            fresh = conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (row["id"],)).fetchone()
        return self._row_to_model(fresh)

    def _select(
        self,
        where: dict[str, Any],
        order_by: Optional[OrderBy],
        skip: Optional[int],
        take: Optional[int],
    ) -> list[sqlite3.Row]:
        clause, values = self._compile_where(where)
        sql = f"SELECT * FROM {self.table}{clause}{self._compile_order(order_by)}"
        if take is not None or skip:
            sql += " LIMIT ? OFFSET ?"
            values.extend([take if take is not None else -1, skip or 0])
        with self._storage.connect() as conn:
            return conn.execute(sql, values).fetchall()

    def _compile_where(self, where: Optional[dict[str, Any]]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        values: list[Any] = []
        for name, condition in (where or {}).items():
            self._check_columns([name])
            column = self._quote(name)
            if isinstance(condition, dict):
                if "in" in condition:
                    items = list(condition["in"])
                    if not items:
                        clauses.append("0")
                        continue
                    clauses.append(f"{column} IN ({', '.join('?' for _ in items)})")
                    values.extend(self._encode(name, item) for item in items)
                elif "not" in condition:
                    if condition["not"] is None:
                        clauses.append(f"{column} IS NOT NULL")
                    else:
                        clauses.append(f"{column} IS NOT ?")
                        values.append(self._encode(name, condition["not"]))
                else:
                    raise ValueError(f"Unsupported filter on {name}: {condition!r}")
            elif condition is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                values.append(self._encode(name, condition))
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", values

    def _compile_order(self, order_by: Optional[OrderBy]) -> str:
        if not order_by:
            return ""
        pairs: Iterable[tuple[str, str]] = [order_by] if isinstance(order_by[0], str) else order_by  # type: ignore[list-item]
        parts = []
        for name, direction in pairs:
            self._check_columns([name])
            direction = direction.upper()
            if direction not in ("ASC", "DESC"):
                raise ValueError(f"Invalid sort direction: {direction}")
            parts.append(f"{self._quote(name)} {direction}")
        return " ORDER BY " + ", ".join(parts)

    def _check_columns(self, names: Iterable[str]) -> None:
        unknown = [name for name in names if name not in self.columns]
        if unknown:
            raise ValueError(f"Unknown {self.table} column(s): {', '.join(unknown)}")

    @staticmethod
    def _quote(name: str) -> str:
        return f'"{name}"'

    def _defaults(self) -> dict[str, Any]:
        return {}

    def _encode(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in self.json_columns:
            return json.dumps(value, ensure_ascii=False, default=str)
        if name in self.bool_columns:
            return 1 if value else 0
        if name in self.datetime_columns and isinstance(value, dt.datetime):
            return _encode_datetime(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _row_to_model(self, row: sqlite3.Row) -> ModelT:
        data: dict[str, Any] = {}
        for name in row.keys():
            value = row[name]
            if value is not None and name in self.json_columns:
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    value = None
            elif value is not None and name in self.bool_columns:
                value = bool(value)
            elif value is not None and name in self.datetime_columns:
                value = dt.datetime.fromisoformat(value)
            data[name] = value
        return self.model.model_validate(data)  # type: ignore[return-value]
