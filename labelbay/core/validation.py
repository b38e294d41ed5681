"""
Request validation helper

Services accept either a parsed pydantic model or a plain dict. Dicts are
validated here and the FIRST structural error becomes a ValidationError,
so a bad request is rejected before anything is processed.
"""
from typing import Any, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from labelbay.core.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse_model(model_cls: Type[M], data: Union[M, dict, Any]) -> M:
    if isinstance(data, model_cls):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ()))
        msg = first.get("msg", "Invalid value")
        # "Value error, ..." prefix comes from validators raising ValueError
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        raise ValidationError(f"{loc}: {msg}" if loc else msg, field=loc or None)
