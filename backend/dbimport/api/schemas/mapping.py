"""Table selection, mapping and template payloads."""

from typing import Any

from pydantic import BaseModel, Field


class TableSelection(BaseModel):
    table: str = Field(..., min_length=1)


class MappingPayload(BaseModel):
    mapping: dict[str, dict[str, Any]] = Field(
        ..., description="Target column -> rule {skip, source_field, default_value, transform, allow_null}"
    )


class SuggestRequest(BaseModel):
    headers: list[str] | None = Field(None, description="Defaults to the uploaded file's headers")
    table: str | None = Field(None, description="Defaults to the selected table")


class ImportOptions(BaseModel):
    import_mode: str = "insert"
    key_columns: list[str] = Field(default_factory=list)
    allow_null: bool = False
    dry_run: bool = False


class ValidationReport(BaseModel):
    errors: list[str]
    warnings: list[str]
    preview: list[dict[str, Any]] = Field(default_factory=list)


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    mapping: dict[str, dict[str, Any]] | None = Field(
        None, description="Defaults to the current saved mapping"
    )
    table: str | None = None


class TemplateRead(BaseModel):
    name: str
    mapping: dict[str, dict[str, Any]]
    table: str
    created_at: str
