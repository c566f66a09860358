"""
Error taxonomy движка аллокации территорий

- ValidationError — некорректная/вырожденная геометрия или входные данные;
  отклоняется синхронно, до начала транзакции
- PolicyError — запрос нарушает продуктовую политику (минимальная площадь,
  повторная покупка того же слота)
- ConflictError — конкурентный commit выиграл гонку за остаток; retryable
  через новый Preview
- PaymentError — подтверждение шлюза не состоялось после provisional
  резервации; обрабатывается cleanup-путём
- NotFoundError — неизвестная территория / резервация
- InvariantViolation — внутренняя ошибка: зарезервированная геометрия не
  является подмножеством территории; транзакция всегда откатывается.
  Пересечение, найденное re-check перед commit, повторяется и в итоге
  становится ConflictError

Каждая ошибка несёт стабильный `code` (dot-separated lowercase tokens)
для программной обработки клиентом.
"""

import re
from typing import Any

_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class TerritoryEngineError(Exception):
    """Базовая типизированная ошибка движка."""

    default_code = "engine.error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        code = code or self.default_code
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


class ValidationError(TerritoryEngineError):
    default_code = "request.validation_error"


class PolicyError(TerritoryEngineError):
    default_code = "policy.violation"


class ConflictError(TerritoryEngineError):
    """Проигрыш гонки за остаток. Клиент должен сделать новый Preview."""

    default_code = "allocation.conflict"
    retryable = True


class PaymentError(TerritoryEngineError):
    default_code = "payment.failed"


class NotFoundError(TerritoryEngineError):
    default_code = "resource.not_found"


class InvariantViolation(TerritoryEngineError):
    default_code = "allocation.invariant_violation"
