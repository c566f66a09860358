"""
JSON Schema Contract Validators

Модуль для валидации входящих JSON контрактов движка до того, как они
попадут в геометрию или транзакционный слой.
Использует библиотеку jsonschema (Draft 2020-12).

Схемы (contracts/schema/):
- territory_geometry.json — GeoJSON Polygon / MultiPolygon (или Feature)
- preview_request.json
- reserve_request.json
- payment_event.json — событие платёжного шлюза (webhook)
"""

import json
from pathlib import Path
from typing import Any, Dict

import jsonschema
from jsonschema import Draft202012Validator, ValidationError


# =============================================================================
# SCHEMA LOADER
# =============================================================================


class SchemaLoader:
    """
    Загрузчик JSON Schema файлов.

    Автоматически находит схемы в contracts/schema/ относительно корня проекта.
    """

    def __init__(self, schema_dir: Path | None = None):
        # Корень проекта: 4 уровня вверх от этого файла
        self._schema_dir = schema_dir or (
            Path(__file__).parent.parent.parent.parent / "contracts" / "schema"
        )
        if not self._schema_dir.exists():
            raise RuntimeError(f"Schema directory not found: {self._schema_dir}")

        # Кэш загруженных схем
        self._schemas: Dict[str, Dict[str, Any]] = {}

    def load_schema(self, schema_name: str) -> Dict[str, Any]:
        """
        Загрузка JSON Schema файла.

        Args:
            schema_name: Имя схемы без расширения (например, 'reserve_request')

        Raises:
            FileNotFoundError: Если файл схемы не найден
            ValueError: Если схема не проходит meta-validation
        """
        if schema_name in self._schemas:
            return self._schemas[schema_name]

        schema_path = self._schema_dir / f"{schema_name}.json"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema not found: {schema_path}")

        with open(schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        try:
            Draft202012Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ValueError(f"Invalid JSON Schema in {schema_name}.json: {e}")

        self._schemas[schema_name] = schema
        return schema


# Глобальный экземпляр загрузчика
_SCHEMA_LOADER = SchemaLoader()


# =============================================================================
# CONTRACT VALIDATORS
# =============================================================================


class ContractValidator:
    """
    Базовый класс для валидаторов контрактов.

    Инкапсулирует логику валидации данных против JSON Schema.
    """

    def __init__(self, schema_name: str):
        self.schema_name = schema_name
        self.schema = _SCHEMA_LOADER.load_schema(schema_name)
        self.validator = Draft202012Validator(
            self.schema, format_checker=Draft202012Validator.FORMAT_CHECKER
        )

    def validate(self, data: Dict[str, Any]) -> None:
        """
        Raises:
            ValidationError: Если данные не соответствуют схеме
        """
        self.validator.validate(data)

    def is_valid(self, data: Dict[str, Any]) -> bool:
        return self.validator.is_valid(data)

    def error_messages(self, data: Dict[str, Any]) -> list[str]:
        """
        Все ошибки валидации в виде "path: message", отсортированные по пути.
        """
        messages = []
        for error in sorted(self.validator.iter_errors(data), key=lambda e: list(e.path)):
            path = "/".join(str(p) for p in error.path) or "<root>"
            messages.append(f"{path}: {error.message}")
        return messages


class TerritoryGeometryValidator(ContractValidator):
    def __init__(self):
        super().__init__("territory_geometry")


class PreviewRequestValidator(ContractValidator):
    def __init__(self):
        super().__init__("preview_request")


class ReserveRequestValidator(ContractValidator):
    def __init__(self):
        super().__init__("reserve_request")


class PaymentEventValidator(ContractValidator):
    def __init__(self):
        super().__init__("payment_event")


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def validate_territory_geometry(data: Dict[str, Any]) -> None:
    """
    Raises:
        ValidationError: Если GeoJSON структурно не Polygon / MultiPolygon
    """
    TerritoryGeometryValidator().validate(data)


def validate_preview_request(data: Dict[str, Any]) -> None:
    PreviewRequestValidator().validate(data)


def validate_reserve_request(data: Dict[str, Any]) -> None:
    ReserveRequestValidator().validate(data)


def validate_payment_event(data: Dict[str, Any]) -> None:
    PaymentEventValidator().validate(data)


__all__ = [
    "ValidationError",
    "SchemaLoader",
    "ContractValidator",
    "TerritoryGeometryValidator",
    "PreviewRequestValidator",
    "ReserveRequestValidator",
    "PaymentEventValidator",
    "validate_territory_geometry",
    "validate_preview_request",
    "validate_reserve_request",
    "validate_payment_event",
]
