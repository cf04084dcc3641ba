import logging
import types
import typing
from collections.abc import Callable, Mapping
from dataclasses import Field, is_dataclass
from datetime import datetime
from typing import (
    Any,
    ClassVar,
    Protocol,
    TypeVar,
    Union,
    cast,
)

logger = logging.getLogger("rowmodel")

SQLValue = Union[None, int, float, str, bytes]

_CAST_SQL_TO_VALUE = Callable[[Any], Any]
_CAST_VALUE_TO_SQL = Callable[[Any], SQLValue]

_SQL_TO_VALUE_REGISTERY: dict[Any, _CAST_SQL_TO_VALUE] = {}
_VALUE_TO_SQL_REGISTERY: dict[Any, _CAST_VALUE_TO_SQL] = {}


def register_cast(
    typ: type,
    fromsql: _CAST_SQL_TO_VALUE,
    tosql: _CAST_VALUE_TO_SQL,
) -> None:
    _SQL_TO_VALUE_REGISTERY[typ] = fromsql
    _VALUE_TO_SQL_REGISTERY[typ] = tosql

    def fromsql_optional(v: Any) -> Any:
        if v is None:
            return None
        return fromsql(v)

    def tosql_optional(v: Any) -> SQLValue:
        if v is None:
            return None
        return tosql(v)

    _SQL_TO_VALUE_REGISTERY[typ | None] = fromsql_optional
    _VALUE_TO_SQL_REGISTERY[typ | None] = tosql_optional


def _register_cast_alias(from_type: type, to_type: type) -> None:
    logger.debug(f"Registering cast alias: {from_type} -> {to_type}")
    fromsql = _SQL_TO_VALUE_REGISTERY[from_type]
    tosql = _VALUE_TO_SQL_REGISTERY[from_type]
    register_cast(to_type, fromsql, tosql)


def sqlvalue(obj: Any) -> SQLValue:
    typ = type(obj)
    if typ not in _VALUE_TO_SQL_REGISTERY:
        raise ValueError(f"Unsupported type: {typ}")
    return _VALUE_TO_SQL_REGISTERY[typ](obj)


def castsqlvalue(typ: type | object, v: SQLValue) -> Any:
    if typ in _SQL_TO_VALUE_REGISTERY:
        return _SQL_TO_VALUE_REGISTERY[typ](v)

    if otyp := _get_newtype_origin_type(typ):
        if otyp in _SQL_TO_VALUE_REGISTERY:
            _register_cast_alias(otyp, cast(type, typ))
            return _SQL_TO_VALUE_REGISTERY[typ](v)

    if otyp := _get_optional_origin_type(typ):
        if v is None:
            return None
        return castsqlvalue(otyp, v)

    raise ValueError(f"Unsupported type: {typ}")


def _get_newtype_origin_type(typ: object) -> type | None:
    if not hasattr(typ, "__supertype__"):
        return None
    return cast(type, getattr(typ, "__supertype__"))


def _get_optional_origin_type(typ: object) -> type | None:
    if typing.get_origin(typ) not in (Union, types.UnionType):
        return None
    args = [a for a in typing.get_args(typ) if a is not type(None)]
    if len(args) != 1:
        return None
    return cast(type, args[0])


class DataclassInstance(Protocol):
    __dataclass_fields__: ClassVar[dict[str, Field[Any]]]


def asrowdict(obj: DataclassInstance) -> dict[str, SQLValue]:
    assert is_dataclass(obj), f"{repr(obj)} is not a dataclass"
    return {
        name: _field_sqlvalue(field.type, getattr(obj, name))
        for name, field in obj.__dataclass_fields__.items()
    }


def _field_sqlvalue(typ: object, value: Any) -> SQLValue:
    # NewType values are plain instances at runtime, so cast by declared type
    if value is None:
        return None
    if otyp := _get_optional_origin_type(typ):
        typ = otyp
    if otyp := _get_newtype_origin_type(typ):
        typ = otyp
    if typ in _VALUE_TO_SQL_REGISTERY:
        return _VALUE_TO_SQL_REGISTERY[typ](value)
    return sqlvalue(value)


DataclassType = TypeVar("DataclassType", bound=DataclassInstance)


def fromrow(cls: type[DataclassType], row: Mapping[str, SQLValue]) -> DataclassType:
    kwargs: dict[str, Any] = {
        name: castsqlvalue(field.type, row[name])
        for name, field in cls.__dataclass_fields__.items()
    }
    return cls(**kwargs)


def _datetime_fromsql(v: Any) -> datetime:
    return datetime.fromisoformat(str(v))


register_cast(type(None), fromsql=lambda _: None, tosql=lambda _: None)
register_cast(bool, fromsql=lambda v: bool(int(v)), tosql=lambda v: 1 if v else 0)
register_cast(int, fromsql=int, tosql=int)
register_cast(str, fromsql=str, tosql=str)
register_cast(
    datetime,
    fromsql=_datetime_fromsql,
    tosql=lambda dt: dt.isoformat(timespec="seconds"),
)
