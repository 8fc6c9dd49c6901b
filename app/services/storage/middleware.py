"""Query middleware: explicit hooks composed around repository calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from services.encryption import EncryptionEngine

WRITE_ACTIONS = frozenset({"create", "update", "upsert"})
READ_ACTIONS = frozenset({"find_unique", "find_first", "find_many"})


@dataclass
class QueryParams:
    model: str
    action: str
    args: dict[str, Any] = field(default_factory=dict)


NextCall = Callable[[QueryParams], Any]
Middleware = Callable[[QueryParams, NextCall], Any]


class CredentialEncryptionMiddleware:
    """Keeps ``email_password`` encrypted at rest and plaintext in memory.

    Writes are encrypted before the statement runs, reads are decrypted after it
    returns and before the caller sees the record. Only the ``User`` model is
    touched.
    """

    model = "User"
    field_name = "email_password"

    def __init__(self, engine: EncryptionEngine) -> None:
        self._engine = engine

    def __call__(self, params: QueryParams, call_next: NextCall) -> Any:
        if params.model != self.model:
            return call_next(params)

        if params.action in WRITE_ACTIONS:
            params = self._encrypt_payloads(params)

        result = call_next(params)

        if result is not None and (params.action in READ_ACTIONS or params.action in WRITE_ACTIONS):
            self._decrypt_result(result)
        return result

    def _encrypt_payloads(self, params: QueryParams) -> QueryParams:
        args = dict(params.args)
        keys = ("data",) if params.action != "upsert" else ("data", "create", "update")
        for key in keys:
            payload = args.get(key)
            if isinstance(payload, dict) and self.field_name in payload:
                args[key] = {**payload, self.field_name: self._engine.encrypt(payload[self.field_name])}
        return QueryParams(model=params.model, action=params.action, args=args)

    def _decrypt_result(self, result: Any) -> None:
        records = result if isinstance(result, list) else [result]
        for record in records:
            stored = getattr(record, self.field_name, None)
            if not stored:
                continue
            # The engine logs failures and yields None, so an unreadable credential reads as unset.
            setattr(record, self.field_name, self._engine.decrypt(stored))
