import time
from datetime import datetime

from fastapi.testclient import TestClient

from icook import app as app_module
from icook.routing import PreflightCORSMiddleware


def make_recipe(client, category_id, name, **fields):
    res = client.post("/recipes", json=dict(fields, category_id=category_id, name=name))
    assert res.status_code == 201, res.text
    return res.json()


def test_health_on_every_root_alias(client):
    for path in ("/", "/api", "/api.php"):
        res = client.get(path)
        assert res.status_code == 200
        assert res.json()["status"] == "ok"
        assert "time" in res.json()


def test_route_query_and_script_prefix(client, category):
    direct = client.get("/categories").json()
    assert client.get("/api.php?route=/categories").json()["data"] == direct["data"]
    assert client.get("/api.php/categories").json()["data"] == direct["data"]
    assert client.get("/categories/").status_code == 200

    res = client.get(f"/api.php?route=categories/{category['id']}")
    assert res.status_code == 200
    assert res.json()["name"] == "Soups"


def test_options_answers_no_content(client):
    res = client.options("/recipes")
    assert res.status_code == 204
    assert res.content == b""


def test_cors_preflight_answers_no_content(client):
    cors = TestClient(
        PreflightCORSMiddleware(app_module.app, **app_module.cors_options(["http://a.test"]))
    )
    preflight = {"Origin": "http://a.test", "Access-Control-Request-Method": "POST"}
    res = cors.options("/categories", headers=preflight)
    assert res.status_code == 204
    assert res.content == b""
    assert res.headers["access-control-allow-origin"] == "http://a.test"

    res = cors.options("/categories", headers=dict(preflight, Origin="http://other.test"))
    assert res.status_code == 400
    assert res.json()["error"] == "CORS request not allowed"

    res = cors.get("/categories", headers={"Origin": "http://a.test"})
    assert res.status_code == 200
    assert res.headers["access-control-allow-origin"] == "http://a.test"


def test_unhandled_error_hides_exception_text(client):
    def broken_db():
        raise RuntimeError("connection string with password")

    app_module.app.dependency_overrides[app_module.get_db] = broken_db
    res = TestClient(app_module.app, raise_server_exceptions=False).get("/categories")
    assert res.status_code == 500
    assert res.json() == {"error": "Internal server error"}


def test_unknown_route_and_method(client):
    res = client.get("/nothing-here")
    assert res.status_code == 404
    assert res.json() == {"error": "Not found", "path": "/nothing-here", "method": "GET"}

    res = client.patch("/categories")
    assert res.status_code == 404
    assert res.json()["method"] == "PATCH"

    # non-numeric ids never reach the handlers
    assert client.get("/categories/abc").status_code == 404


# ---- categories ----

def test_create_category_uses_default_source(client):
    res = client.post("/categories", json={"name": "  Desserts ", "icon": "birthday.cake"})
    assert res.status_code == 201
    obj = res.json()
    assert obj["name"] == "Desserts"
    assert obj["icon"] == "birthday.cake"

    sources = client.get("/sources").json()["data"]
    assert [s["name"] for s in sources] == ["Personal"]
    assert obj["source_id"] == sources[0]["id"]

    # second category lands in the same default source
    other = client.post("/categories", json={"name": "Mains", "icon": "fork.knife"}).json()
    assert other["source_id"] == obj["source_id"]


def test_category_validation(client):
    res = client.post("/categories", json={"name": "Soups"})
    assert res.status_code == 400
    assert res.json()["error"] == "`icon` is required (1-50 chars)"

    res = client.post("/categories", json={"name": "x" * 101, "icon": "cup"})
    assert res.status_code == 400
    assert res.json()["error"] == "`name` is required (1-100 chars)"

    res = client.post("/categories", json={"name": "Soups", "icon": "cup", "source_id": 999})
    assert res.status_code == 404
    assert res.json()["error"] == "Source not found"


def test_json_only_and_malformed_body(client):
    res = client.post("/categories", data={"name": "Soups", "icon": "cup"})
    assert res.status_code == 415
    assert res.json()["error"] == "Content-Type must be application/json"

    res = client.post(
        "/categories", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Invalid JSON body"
    assert body["detail"]


def test_duplicate_category_name(client, category):
    res = client.post("/categories", json={"name": "Soups", "icon": "cup"})
    assert res.status_code == 409
    assert res.json() == {"error": "Category name already exists"}

    other = client.post("/categories", json={"name": "Salads", "icon": "leaf"}).json()
    res = client.put(f"/categories/{other['id']}", json={"name": "Soups", "icon": "leaf"})
    assert res.status_code == 409


def test_category_names_clash_ignoring_case(client, category):
    res = client.post("/categories", json={"name": "soups", "icon": "cup"})
    assert res.status_code == 409

    other = client.post("/categories", json={"name": "Salads", "icon": "leaf"}).json()
    res = client.put(f"/categories/{other['id']}", json={"name": "SOUPS", "icon": "leaf"})
    assert res.status_code == 409

    # recasing a category's own name is allowed
    res = client.put(f"/categories/{category['id']}", json={"name": "SOUPS", "icon": "cup"})
    assert res.status_code == 200
    assert res.json()["name"] == "SOUPS"


def test_list_categories_search_and_paging(client):
    for name in ("Desserts", "Breads", "Dips", "Soups"):
        client.post("/categories", json={"name": name, "icon": "x"})

    data = client.get("/categories").json()
    assert [c["name"] for c in data["data"]] == ["Breads", "Desserts", "Dips", "Soups"]
    assert data["total"] == 4
    assert data["query"] == ""
    assert data["limit"] == 100

    data = client.get("/categories?q=d").json()
    assert [c["name"] for c in data["data"]] == ["Breads", "Desserts", "Dips"]
    assert data["query"] == "d"

    data = client.get("/categories?page=2&limit=3").json()
    assert [c["name"] for c in data["data"]] == ["Soups"]
    assert data["page"] == 2 and data["total"] == 4

    # malformed or out of range numbers are clamped
    data = client.get("/categories?page=abc&limit=1000").json()
    assert data["page"] == 1 and data["limit"] == 100


def test_category_get_update_delete(client, category):
    cid = category["id"]
    assert client.get(f"/categories/{cid}").json()["name"] == "Soups"

    res = client.put(f"/categories/{cid}", json={"name": "Broths & Soups", "icon": "cup"})
    assert res.status_code == 200
    assert res.json()["name"] == "Broths & Soups"

    res = client.delete(f"/categories/{cid}")
    assert res.json() == {"deleted": cid}
    assert client.get(f"/categories/{cid}").status_code == 404
    assert client.delete(f"/categories/{cid}").status_code == 404
    assert client.put(f"/categories/{cid}", json={"name": "a", "icon": "b"}).status_code == 404


def test_deleting_category_removes_its_recipes(client, category):
    recipe = make_recipe(client, category["id"], "Tomato Soup")
    client.delete(f"/categories/{category['id']}")
    assert client.get(f"/recipes?id={recipe['id']}").status_code == 404


# ---- recipes ----

def test_create_recipe_validation(client, category):
    res = client.post("/recipes", json={"name": "No category"})
    assert res.status_code == 400
    assert res.json()["error"] == "`category_id` is required"

    res = client.post("/recipes", json={"category_id": category["id"], "name": ""})
    assert res.status_code == 400
    assert res.json()["error"] == "`name` is required (1-150 chars)"

    res = client.post("/recipes", json={"category_id": 999, "name": "Lost"})
    assert res.status_code == 404
    assert res.json()["error"] == "Category not found"

    res = client.post(
        "/recipes", json={"category_id": category["id"], "name": "Bad", "ingredients": [1, 2]}
    )
    assert res.status_code == 400
    assert res.json()["error"] == "Ingredients must be an array of strings"


def test_create_recipe_returns_full_record(client, category):
    obj = make_recipe(
        client,
        category["id"],
        "Pesto Pasta",
        recipe_time="20",
        details="## Ingredients\n- Pasta",
        image=" /uploads/abc.jpg ",
        ingredients='["pasta", "pesto"]',
    )
    assert obj["category_id"] == category["id"]
    assert obj["source_id"] == category["source_id"]
    assert obj["recipe_time"] == 20
    assert obj["image"] == "/uploads/abc.jpg"
    assert obj["ingredients"] == ["pasta", "pesto"]
    assert obj["steps"] == []
    assert obj["last_modified"]

    fetched = client.get(f"/recipes?id={obj['id']}").json()
    assert fetched == obj


def test_steps_derive_ingredients(client, category):
    steps = [
        {"step_number": 1, "instruction": "Chop", "ingredients": ["onion", "garlic"]},
        {"step_number": 2, "instruction": "Fry", "ingredients": ["onion", "butter"]},
    ]
    obj = make_recipe(client, category["id"], "Base", steps=steps)
    assert obj["ingredients"] == ["butter", "garlic", "onion"]
    assert obj["steps"][1]["instruction"] == "Fry"

    # explicit ingredients win over derivation
    obj = make_recipe(client, category["id"], "Other", steps=steps, ingredients=["salt"])
    assert obj["ingredients"] == ["salt"]


def test_list_recipes_by_category_and_newest_first(client, category):
    other = client.post("/categories", json={"name": "Salads", "icon": "leaf"}).json()
    first = make_recipe(client, category["id"], "Zucchini Soup")
    second = make_recipe(client, category["id"], "Apple Soup")
    make_recipe(client, other["id"], "Caesar")

    data = client.get(f"/recipes?category_id={category['id']}").json()
    assert [r["name"] for r in data["data"]] == ["Apple Soup", "Zucchini Soup"]
    assert data["total"] == 2
    assert "query" not in data

    data = client.get("/recipes").json()
    assert data["data"][0]["name"] == "Caesar"
    assert [r["id"] for r in data["data"][1:]] == [second["id"], first["id"]]
    assert data["limit"] == 50


def test_search_prefers_name_matches(client, category):
    make_recipe(client, category["id"], "Salad", details="add a tomato")
    make_recipe(client, category["id"], "Pasta", ingredients=["tomato", "basil"])
    make_recipe(client, category["id"], "Tomato Soup")
    make_recipe(client, category["id"], "Bread")

    data = client.get("/recipes?q=tomato").json()
    assert data["query"] == "tomato"
    assert data["total"] == 3
    assert [r["name"] for r in data["data"]] == ["Tomato Soup", "Pasta", "Salad"]

    # wildcard characters are matched literally
    assert client.get("/recipes?q=%25").json()["total"] == 0


def test_update_recipe_partially(client, category):
    obj = make_recipe(client, category["id"], "Pesto Pasta", recipe_time=20, details="d")
    rid = obj["id"]

    res = client.put(f"/recipes/{rid}", json={"name": "Pesto Pasta (Creamy)", "recipe_time": 25})
    assert res.status_code == 200
    updated = res.json()
    assert updated["name"] == "Pesto Pasta (Creamy)"
    assert updated["recipe_time"] == 25
    assert updated["details"] == "d"

    # null clears nullable fields but is ignored for name
    updated = client.put(f"/recipes/{rid}", json={"name": None, "details": None}).json()
    assert updated["name"] == "Pesto Pasta (Creamy)"
    assert updated["details"] is None

    res = client.put(f"/recipes/{rid}", json={})
    assert res.status_code == 400
    assert res.json()["error"] == "Nothing to update"

    res = client.put(f"/recipes/{rid}", json={"category_id": -1})
    assert res.status_code == 400
    assert res.json()["error"] == "`category_id` must be a positive integer"

    assert client.put(f"/recipes/{rid}", json={"category_id": 999}).status_code == 404
    assert client.put("/recipes/999", json={"name": "x"}).status_code == 404


def test_null_steps_keep_stored_ingredients(client, category):
    obj = make_recipe(client, category["id"], "Pasta", ingredients=["pasta", "pesto"])
    rid = obj["id"]

    res = client.put(f"/recipes/{rid}", json={"name": "Pasta 2", "steps": None})
    assert res.status_code == 200
    assert res.json()["ingredients"] == ["pasta", "pesto"]
    assert res.json()["steps"] == []

    steps = [{"step_number": 1, "instruction": "Boil", "ingredients": ["water", "pasta"]}]
    updated = client.put(f"/recipes/{rid}", json={"steps": steps}).json()
    assert updated["ingredients"] == ["pasta", "water"]


def test_update_refreshes_last_modified(client, category):
    obj = make_recipe(client, category["id"], "Pesto Pasta")
    time.sleep(0.01)
    updated = client.put(f"/recipes/{obj['id']}", json={"recipe_time": 5}).json()
    before = datetime.fromisoformat(obj["last_modified"])
    assert datetime.fromisoformat(updated["last_modified"]) > before


def test_recipe_time_is_cast_leniently(client, category):
    obj = make_recipe(client, category["id"], "Soon", recipe_time="soon")
    assert obj["recipe_time"] == 0

    updated = client.put(f"/recipes/{obj['id']}", json={"recipe_time": "25 min"}).json()
    assert updated["recipe_time"] == 25


def test_moving_recipe_follows_category_source(client, category):
    source = client.post("/sources", json={"name": "Family"}).json()
    family_cat = client.post(
        "/categories", json={"name": "Soups", "icon": "cup", "source_id": source["id"]}
    ).json()
    obj = make_recipe(client, category["id"], "Borscht")

    moved = client.put(f"/recipes/{obj['id']}", json={"category_id": family_cat["id"]}).json()
    assert moved["category_id"] == family_cat["id"]
    assert moved["source_id"] == source["id"]


def test_delete_recipe(client, category):
    obj = make_recipe(client, category["id"], "Gone")
    assert client.delete(f"/recipes/{obj['id']}").json() == {"deleted": obj["id"]}
    assert client.delete(f"/recipes/{obj['id']}").status_code == 404


def test_recipe_counts_and_random(client, category):
    other = client.post("/categories", json={"name": "Salads", "icon": "leaf"}).json()
    for name in ("A", "B", "C"):
        make_recipe(client, category["id"], name)
    make_recipe(client, other["id"], "D")

    counts = client.get("/recipes/counts").json()["data"]
    assert counts == {str(category["id"]): 3, str(other["id"]): 1}

    picked = client.get("/recipes/random?count=2").json()["data"]
    assert len(picked) == 2
    assert len({r["id"] for r in picked}) == 2

    assert len(client.get("/recipes/random?count=50").json()["data"]) == 4


# ---- sources ----

def test_source_crud_and_cascade(client):
    res = client.post("/sources", json={"name": "Family", "is_personal": False})
    assert res.status_code == 201
    source = res.json()
    assert source["is_personal"] is False
    assert source["owner"] == "local"

    cat = client.post(
        "/categories", json={"name": "Cakes", "icon": "cake", "source_id": source["id"]}
    ).json()
    recipe = make_recipe(client, cat["id"], "Sponge")

    assert client.put(f"/sources/{source['id']}", json={"name": "Kin"}).json()["name"] == "Kin"
    assert client.get(f"/sources/{source['id']}").json()["name"] == "Kin"

    assert client.get(f"/categories?source_id={source['id']}").json()["total"] == 1
    assert client.get(f"/recipes?source_id={source['id']}").json()["total"] == 1

    assert client.delete(f"/sources/{source['id']}").json() == {"deleted": source["id"]}
    assert client.get(f"/categories/{cat['id']}").status_code == 404
    assert client.get(f"/recipes?id={recipe['id']}").status_code == 404
    assert client.get(f"/sources/{source['id']}").status_code == 404


def test_source_validation(client):
    res = client.post("/sources", json={"name": "   "})
    assert res.status_code == 400
    assert res.json()["error"] == "`name` is required (1-100 chars)"


# ---- tags ----

def test_tag_crud(client):
    res = client.post("/tags", json={"name": " Vegan "})
    assert res.status_code == 201
    tag = res.json()
    assert tag["name"] == "Vegan"
    sources = client.get("/sources").json()["data"]
    assert tag["source_id"] == sources[0]["id"]

    res = client.post("/tags", json={"name": "vegan"})
    assert res.status_code == 409
    assert res.json() == {"error": "Tag name already exists"}

    other = client.post("/tags", json={"name": "Quick"}).json()
    assert client.put(f"/tags/{other['id']}", json={"name": "VEGAN"}).status_code == 409

    res = client.put(f"/tags/{tag['id']}", json={"name": "vegan"})
    assert res.status_code == 200
    assert client.get(f"/tags/{tag['id']}").json()["name"] == "vegan"

    listing = client.get(f"/tags?source_id={tag['source_id']}").json()
    assert [t["name"] for t in listing["data"]] == ["Quick", "vegan"]
    assert listing["total"] == 2

    assert client.delete(f"/tags/{tag['id']}").json() == {"deleted": tag["id"]}
    assert client.get(f"/tags/{tag['id']}").status_code == 404
    assert client.delete(f"/tags/{tag['id']}").status_code == 404
    assert client.put(f"/tags/{tag['id']}", json={"name": "x"}).status_code == 404


def test_tags_belong_to_a_source(client):
    res = client.post("/tags", json={"name": ""})
    assert res.status_code == 400
    assert res.json()["error"] == "`name` is required (1-50 chars)"

    res = client.post("/tags", json={"name": "Vegan", "source_id": 999})
    assert res.status_code == 404
    assert res.json()["error"] == "Source not found"

    client.post("/tags", json={"name": "Vegan"})
    family = client.post("/sources", json={"name": "Family"}).json()
    res = client.post("/tags", json={"name": "Vegan", "source_id": family["id"]})
    assert res.status_code == 201

    client.delete(f"/sources/{family['id']}")
    assert client.get(f"/tags?source_id={family['id']}").json()["total"] == 0
    assert client.get("/tags").json()["total"] == 1
