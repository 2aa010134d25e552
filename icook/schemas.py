import json
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _trimmed(value, message: str, max_len: int) -> str:
    text = "" if value is None else str(value).strip()
    if not text or len(text) > max_len:
        raise ValueError(message)
    return text


def _to_int(value, field: str):
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"`{field}` must be an integer")
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"`{field}` must be an integer") from None


_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _loose_int(value):
    """Read a leading integer the way PHP's ``(int)`` cast does; anything else is 0."""
    if value is None:
        return None
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, float):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return 0
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else 0


def _string_list(items) -> List[str]:
    if not all(isinstance(i, str) for i in items):
        raise ValueError("Ingredients must be an array of strings")
    return list(items)


def parse_ingredients(value) -> Optional[List[str]]:
    """Accept a list of strings or a string holding a JSON array of strings."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            raise ValueError("Invalid ingredients JSON format") from None
        if not isinstance(decoded, list):
            raise ValueError("Invalid ingredients JSON format")
        return _string_list(decoded)
    if isinstance(value, (list, tuple)):
        return _string_list(value)
    raise ValueError("Ingredients must be an array of strings or valid JSON array string")


def _decode_json_list(value):
    # Stored columns hold JSON text; unreadable values decode to an empty list
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return []
        return decoded if isinstance(decoded, list) else []
    return value


class RecipeStep(BaseModel):
    step_number: int = Field(..., json_schema_extra={"example": 1})
    instruction: str = Field(..., json_schema_extra={"example": "Chop the onion"})
    ingredients: List[str] = Field(
        default_factory=list, json_schema_extra={"example": ["onion"]}
    )


# ---- Sources ----

class SourceCreate(BaseModel):
    name: str = Field(default="", validate_default=True)
    is_personal: bool = True
    owner: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-100 chars)", 100)


class SourceUpdate(SourceCreate):
    pass


class Source(BaseModel):
    id: int
    name: str
    is_personal: bool
    owner: str
    last_modified: datetime

    model_config = ConfigDict(from_attributes=True)


# ---- Categories ----

class CategoryBase(BaseModel):
    name: str = Field(
        default="", validate_default=True, json_schema_extra={"example": "Soups"}
    )
    icon: str = Field(
        default="", validate_default=True, json_schema_extra={"example": "takeoutbag.and.cup.and.straw"}
    )

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-100 chars)", 100)

    @field_validator("icon", mode="before")
    @classmethod
    def check_icon(cls, v):
        return _trimmed(v, "`icon` is required (1-50 chars)", 50)


class CategoryCreate(CategoryBase):
    source_id: Optional[int] = None

    @field_validator("source_id", mode="before")
    @classmethod
    def check_source_id(cls, v):
        return _to_int(v, "source_id")


class CategoryUpdate(CategoryBase):
    pass


class Category(BaseModel):
    id: int
    source_id: int
    name: str
    icon: str

    model_config = ConfigDict(from_attributes=True)


# ---- Tags ----

class TagCreate(BaseModel):
    name: str = Field(default="", validate_default=True, json_schema_extra={"example": "Vegan"})
    source_id: Optional[int] = None

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-50 chars)", 50)

    @field_validator("source_id", mode="before")
    @classmethod
    def check_source_id(cls, v):
        return _to_int(v, "source_id")


class TagUpdate(BaseModel):
    name: str = Field(default="", validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-50 chars)", 50)


class Tag(BaseModel):
    id: int
    source_id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


# ---- Recipes ----

class RecipeCreate(BaseModel):
    category_id: int = Field(default=0, validate_default=True)
    name: str = Field(
        default="", validate_default=True, json_schema_extra={"example": "Pesto Pasta"}
    )
    recipe_time: Optional[int] = None
    details: Optional[str] = None
    image: Optional[str] = None
    ingredients: Optional[List[str]] = None
    steps: Optional[List[RecipeStep]] = None

    @field_validator("category_id", mode="before")
    @classmethod
    def check_category_id(cls, v):
        try:
            cid = _to_int(v, "category_id")
        except ValueError:
            cid = 0
        if not cid or cid <= 0:
            raise ValueError("`category_id` is required")
        return cid

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-150 chars)", 150)

    @field_validator("recipe_time", mode="before")
    @classmethod
    def check_recipe_time(cls, v):
        return _loose_int(v)

    @field_validator("details", mode="before")
    @classmethod
    def check_details(cls, v):
        return None if v is None else str(v)

    @field_validator("image", mode="before")
    @classmethod
    def check_image(cls, v):
        return None if v is None else str(v).strip()

    @field_validator("ingredients", mode="before")
    @classmethod
    def check_ingredients(cls, v):
        return parse_ingredients(v)


class RecipeUpdate(BaseModel):
    """Partial update; only keys present in the request body are applied."""

    category_id: Optional[int] = None
    name: Optional[str] = None
    recipe_time: Optional[int] = None
    details: Optional[str] = None
    image: Optional[str] = None
    ingredients: Optional[List[str]] = None
    steps: Optional[List[RecipeStep]] = None

    @field_validator("category_id", mode="before")
    @classmethod
    def check_category_id(cls, v):
        if v is None:
            return None
        try:
            cid = _to_int(v, "category_id")
        except ValueError:
            cid = 0
        if cid <= 0:
            raise ValueError("`category_id` must be a positive integer")
        return cid

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        if v is None:
            return None
        return _trimmed(v, "`name` must be 1-150 chars", 150)

    @field_validator("recipe_time", mode="before")
    @classmethod
    def check_recipe_time(cls, v):
        return _loose_int(v)

    @field_validator("details", mode="before")
    @classmethod
    def check_details(cls, v):
        return None if v is None else str(v)

    @field_validator("image", mode="before")
    @classmethod
    def check_image(cls, v):
        return None if v is None else str(v).strip()

    @field_validator("ingredients", mode="before")
    @classmethod
    def check_ingredients(cls, v):
        return parse_ingredients(v)

    def changes(self) -> dict:
        # category_id and name sent as null mean "leave unchanged"
        data = self.model_dump(exclude_unset=True)
        for key in ("category_id", "name"):
            if key in data and data[key] is None:
                del data[key]
        return data


class Recipe(BaseModel):
    id: int
    source_id: int
    category_id: int
    name: str
    recipe_time: Optional[int] = None
    details: Optional[str] = None
    image: Optional[str] = None
    ingredients: List[str] = Field(default_factory=list)
    steps: List[RecipeStep] = Field(default_factory=list)
    last_modified: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("ingredients", "steps", mode="before")
    @classmethod
    def decode_stored(cls, v):
        return _decode_json_list(v)


# ---- Export / import packages ----

class ExportedCategory(CategoryBase):
    pass


class ExportedRecipe(BaseModel):
    name: str
    recipeTime: int = 0
    details: Optional[str] = None
    categoryName: str
    recipeSteps: List[RecipeStep] = Field(default_factory=list)
    lastModified: datetime

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v):
        return _trimmed(v, "`name` is required (1-150 chars)", 150)

    @field_validator("categoryName", mode="before")
    @classmethod
    def check_category_name(cls, v):
        return _trimmed(v, "`categoryName` is required (1-100 chars)", 100)


class RecipeExportPackage(BaseModel):
    sourceName: str
    exportedAt: datetime
    categories: List[ExportedCategory] = Field(default_factory=list)
    recipes: List[ExportedRecipe] = Field(default_factory=list)


class ImportSummary(BaseModel):
    source_id: int
    dry_run: bool
    categories_created: List[str] = Field(default_factory=list)
    categories_existing: List[str] = Field(default_factory=list)
    recipes_created: List[str] = Field(default_factory=list)
    recipes_skipped: List[str] = Field(default_factory=list)
