import logging
from collections.abc import Iterable
from typing import Any

import pydantic

from apps.flows.const import DataStoreFieldType, NodeType
from apps.flows.exceptions import FormulaError, TypeMismatch
from apps.flows.flow import DataStoreSchemaField, Flow, Node
from apps.flows.formulas import coerce_value, resolve_formula
from apps.flows.results import BatchResult, ItemAction
from apps.flows.variables import VariableRegistry

logger = logging.getLogger("flows.data_store")

TYPE_DEFAULTS = {
    DataStoreFieldType.STRING: "",
    DataStoreFieldType.NUMBER: "0",
    DataStoreFieldType.INTEGER: "0",
    DataStoreFieldType.BOOLEAN: "false",
}


class DataStoreValue(pydantic.BaseModel):
    """The value of one data-store field for a turn."""

    id: str
    name: str
    type: DataStoreFieldType
    value: Any = None


def default_value(field_type: DataStoreFieldType) -> Any:
    text = TYPE_DEFAULTS[DataStoreFieldType(field_type)]
    value = coerce_value(text, field_type)
    return "" if value is None else value


def values_by_name(values: Iterable[DataStoreValue]) -> dict[str, Any]:
    return {value.name: value.value for value in values}


def initialise_data_store(
    flow: Flow, previous: Iterable[DataStoreValue] | None, registry: VariableRegistry
) -> list[DataStoreValue]:
    """Carry forward the previous turn's values and create any missing field from its initial value.

    An initial value that cannot be evaluated falls back to the type default.
    """
    previous_by_id = {value.id: value for value in previous or []}
    values = []
    for field in flow.schema_fields:
        existing = previous_by_id.get(field.id)
        if existing is not None:
            values.append(DataStoreValue(id=field.id, name=field.name, type=field.type, value=existing.value))
            continue

        try:
            value = resolve_formula(field.initialValue, registry, field)
        except FormulaError as e:
            logger.warning("Initial value of data store field '%s' is invalid: %s", field.name, e)
            value = None
        if value is None:
            value = default_value(field.type)
        values.append(DataStoreValue(id=field.id, name=field.name, type=field.type, value=value))
    return values


def apply_data_store_node(
    flow: Flow,
    node: Node,
    values: Iterable[DataStoreValue],
    registry: VariableRegistry,
) -> tuple[list[DataStoreValue], BatchResult]:
    """Evaluate the node's fields in order and return the next data-store values.

    Each field sees the values written by the fields before it. A field that fails keeps its
    previous value; the failure is reported in the returned ``BatchResult``.
    """
    if node.type != NodeType.DATA_STORE:
        raise TypeMismatch(
            f"Node '{node.id}' is not a data store node",
            node_id=node.id,
            expected=NodeType.DATA_STORE,
            actual=node.type,
        )

    current: dict[str, DataStoreValue] = {value.id: value for value in values}
    result = BatchResult()
    for store_field in node.data.dataStoreFields:
        schema_field = flow.schema_field_by_id(store_field.schemaFieldId)
        if schema_field is None:
            result.record_failure(ItemAction.UPDATE, store_field.schemaFieldId, "schema field not found")
            continue

        field_registry = registry.with_data_store(values_by_name(current.values()))
        try:
            value = resolve_formula(store_field.logic, field_registry, schema_field)
        except FormulaError as e:
            logger.info("Data store field '%s' was not updated: %s", schema_field.name, e.message)
            result.record_failure(ItemAction.UPDATE, schema_field.name, e.message)
            continue

        if value is None:
            result.record(ItemAction.SKIP, schema_field.name)
            continue
        current[schema_field.id] = _value_for(schema_field, value)
        result.record(ItemAction.UPDATE, schema_field.name)

    ordered = [current.pop(field.id) for field in flow.schema_fields if field.id in current]
    return ordered + list(current.values()), result


def _value_for(field: DataStoreSchemaField, value: Any) -> DataStoreValue:
    return DataStoreValue(id=field.id, name=field.name, type=field.type, value=value)
