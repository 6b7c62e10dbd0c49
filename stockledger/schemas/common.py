from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel

from stockledger.core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


def validation_issues(exc: pydantic.ValidationError) -> list[ValidationIssueOut]:
    issues = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", [])]
        issues.append(
            ValidationIssueOut(
                field=".".join(location) if location else "body",
                message=err.get("msg", "Invalid value"),
                type=err.get("type"),
            )
        )
    return issues


def parse_input(model: type[ModelT], data: ModelT | dict[str, Any]) -> ModelT:
    """Coerce caller input into ``model``, raising the ledger's ValidationError on failure."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    if not isinstance(data, dict):
        raise ValidationError(f"{model.__name__} payload must be a mapping")
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        issues = validation_issues(exc)
        first = issues[0]
        raise ValidationError(
            f"{first.field}: {first.message}",
            field=first.field,
            issues=issues,
        ) from exc
