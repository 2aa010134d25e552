import pytest
from pydantic import ValidationError

from icook.crud import derive_ingredients
from icook.errors import first_message
from icook.routing import resolve_path
from icook.schemas import RecipeCreate, RecipeUpdate, parse_ingredients


@pytest.mark.parametrize(
    "path, query, expected",
    [
        ("/categories", "", "/categories"),
        ("/categories/", "", "/categories"),
        ("/api.php", "", "/"),
        ("/api.php/recipes/3", "", "/recipes/3"),
        ("/api.php", "route=/recipes&id=4", "/recipes"),
        ("/api.php", "route=recipes/", "/recipes"),
        ("/api.php", "route=", "/"),
        ("/", "", "/"),
    ],
)
def test_resolve_path(path, query, expected):
    assert resolve_path(path, query) == expected


def test_parse_ingredients():
    assert parse_ingredients(None) is None
    assert parse_ingredients(["a", "b"]) == ["a", "b"]
    assert parse_ingredients('["a"]') == ["a"]
    with pytest.raises(ValueError, match="Invalid ingredients JSON format"):
        parse_ingredients("not json")
    with pytest.raises(ValueError, match="Invalid ingredients JSON format"):
        parse_ingredients('{"a": 1}')
    with pytest.raises(ValueError, match="array of strings"):
        parse_ingredients('["a", 2]')
    with pytest.raises(ValueError, match="valid JSON array string"):
        parse_ingredients(5)


def test_recipe_create_message():
    with pytest.raises(ValidationError) as err:
        RecipeCreate.model_validate({"category_id": "abc", "name": "x"})
    assert first_message(err.value) == "`category_id` is required"


def test_recipe_time_reads_leading_number():
    def cast(value):
        return RecipeCreate.model_validate({"category_id": 1, "name": "x", "recipe_time": value})

    assert cast("soon").recipe_time == 0
    assert cast(" 45 minutes").recipe_time == 45
    assert cast("12.9").recipe_time == 12
    assert cast(30.5).recipe_time == 30
    assert cast(None).recipe_time is None


def test_recipe_update_changes_only_sent_keys():
    update = RecipeUpdate.model_validate({"name": None, "image": None, "recipe_time": 12.9})
    assert update.changes() == {"image": None, "recipe_time": 12}


def test_derive_ingredients():
    steps = [{"ingredients": ["b", "a"]}, {"ingredients": ["a"]}, {}]
    assert derive_ingredients(steps) == ["a", "b"]
    assert derive_ingredients(None) == []
