import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud, exchange, media, schemas
from .config import Settings, get_settings
from .db import SessionLocal, init_db
from .errors import ApiError, failure, first_message, install_handlers, validation_detail
from .routing import PreflightCORSMiddleware, RouteRewriteMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize DB once at startup
    init_db()
    yield


def cors_options(origins) -> dict:
    return {
        "allow_origins": list(origins),
        "allow_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
    }


settings = get_settings()

app = FastAPI(title="iCook", lifespan=lifespan)
install_handlers(app)
app.add_middleware(RouteRewriteMiddleware)
if settings.cors_origins:
    # Must wrap RouteRewriteMiddleware to see preflights
    app.add_middleware(PreflightCORSMiddleware, **cors_options(settings.cors_origins))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def json_body(request: Request) -> dict:
    ctype = request.headers.get("content-type", "")
    if "application/json" not in ctype.lower():
        raise ApiError("Content-Type must be application/json", 415)
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ApiError("Invalid JSON body", 400, detail=str(e)) from e
    return data if isinstance(data, dict) else {}


def validate(model, body: dict):
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise ApiError(first_message(e), 400, detail=validation_detail(e)) from e


def int_param(value: Optional[str], default=None):
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return default


def paging(page: Optional[str], limit: Optional[str], default_limit: int):
    page_n = max(1, int_param(page, 1))
    limit_n = min(100, max(1, int_param(limit, default_limit)))
    return page_n, limit_n, (page_n - 1) * limit_n


def source_out(s) -> dict:
    return schemas.Source.model_validate(s).model_dump(mode="json")


def category_out(c) -> dict:
    return schemas.Category.model_validate(c).model_dump(mode="json")


def recipe_out(r) -> dict:
    return schemas.Recipe.model_validate(r).model_dump(mode="json")


def tag_out(t) -> dict:
    return schemas.Tag.model_validate(t).model_dump(mode="json")


def target_source(db: Session, source_id: Optional[int], settings: Settings):
    """The requested source, or the personal default source when none was named."""
    if source_id:
        source = crud.get_source(db, source_id)
        if not source:
            raise ApiError("Source not found", 404)
        return source
    return crud.get_or_create_default_source(
        db, settings.default_source_name, settings.default_owner
    )


@app.get("/")
@app.get("/api")
def health():
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat(timespec="seconds")}


# ---- Media ----

@app.post("/media", status_code=201)
async def upload_media(
    file: Optional[UploadFile] = File(None),
    settings: Settings = Depends(get_settings),
):
    if file is None:
        raise ApiError("No file uploaded", 400)
    # Read one byte past the limit so oversize uploads are detected without buffering them whole
    data = await file.read(settings.max_upload_bytes + 1)
    return media.save_image(data, file.content_type, settings)


@app.get("/media/{filename}")
def get_media(filename: str, settings: Settings = Depends(get_settings)):
    path = media.media_path(filename, settings)
    return FileResponse(str(path))


@app.delete("/media/{filename}")
def delete_media(filename: str, settings: Settings = Depends(get_settings)):
    media.delete_image(filename, settings)
    return {"deleted": filename}


# ---- Sources ----

@app.get("/sources")
def list_sources(
    page: Optional[str] = None, limit: Optional[str] = None, db: Session = Depends(get_db)
):
    page_n, limit_n, offset = paging(page, limit, 100)
    with failure("Failed to fetch sources"):
        rows, total = crud.get_sources(db, skip=offset, limit=limit_n)
    return {"data": [source_out(s) for s in rows], "page": page_n, "limit": limit_n, "total": total}


@app.get("/sources/{source_id:int}")
def get_source(source_id: int, db: Session = Depends(get_db)):
    s = crud.get_source(db, source_id)
    if not s:
        raise ApiError("Source not found", 404)
    return source_out(s)


@app.post("/sources", status_code=201)
def create_source(
    body: dict = Depends(json_body),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    data = validate(schemas.SourceCreate, body)
    with failure("Failed to create source"):
        s = crud.create_source(
            db, data.name, is_personal=data.is_personal, owner=data.owner or settings.default_owner
        )
    return source_out(s)


@app.put("/sources/{source_id:int}")
def update_source(source_id: int, body: dict = Depends(json_body), db: Session = Depends(get_db)):
    data = validate(schemas.SourceUpdate, body)
    with failure("Failed to update source"):
        s = crud.update_source(db, source_id, data.name)
    if not s:
        raise ApiError("Source not found", 404)
    return source_out(s)


@app.delete("/sources/{source_id:int}")
def delete_source(source_id: int, db: Session = Depends(get_db)):
    with failure("Failed to delete source"):
        deleted = crud.delete_source(db, source_id)
    if not deleted:
        raise ApiError("Source not found", 404)
    return {"deleted": source_id}


@app.get("/sources/{source_id:int}/export")
def export_source(source_id: int, db: Session = Depends(get_db)):
    s = crud.get_source(db, source_id)
    if not s:
        raise ApiError("Source not found", 404)
    with failure("Failed to export source"):
        package = exchange.export_source(db, s)
    return JSONResponse(content=package.model_dump(mode="json"))


@app.post("/sources/{source_id:int}/import")
def import_source(
    source_id: int,
    dry_run: bool = False,
    body: dict = Depends(json_body),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    s = crud.get_source(db, source_id)
    if not s:
        raise ApiError("Source not found", 404)
    try:
        package = exchange.parse_package(body)
    except exchange.InvalidPackageError as e:
        raise ApiError("Invalid import package", 400, detail=str(e)) from e
    with failure("Failed to import recipes"):
        summary = exchange.import_package(
            db, s, package, dry_run=dry_run, default_icon=settings.default_category_icon
        )
    return summary.model_dump()


# ---- Categories ----

@app.get("/categories")
def list_categories(
    q: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    source_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = (q or "").strip()
    page_n, limit_n, offset = paging(page, limit, 100)
    with failure("Failed to fetch categories"):
        rows, total = crud.get_categories(
            db, q=query, source_id=int_param(source_id), skip=offset, limit=limit_n
        )
    return {
        "data": [category_out(c) for c in rows],
        "page": page_n,
        "limit": limit_n,
        "total": total,
        "query": query,
    }


@app.get("/categories/{category_id:int}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    c = crud.get_category(db, category_id)
    if not c:
        raise ApiError("Category not found", 404)
    return category_out(c)


@app.post("/categories", status_code=201)
def create_category(
    body: dict = Depends(json_body),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    data = validate(schemas.CategoryCreate, body)
    with failure("Failed to create category"):
        source = target_source(db, data.source_id, settings)
        try:
            c = crud.create_category(db, source.id, data.name, data.icon)
        except crud.DuplicateNameError:
            raise ApiError("Category name already exists", 409) from None
    return category_out(c)


@app.put("/categories/{category_id:int}")
def update_category(category_id: int, body: dict = Depends(json_body), db: Session = Depends(get_db)):
    data = validate(schemas.CategoryUpdate, body)
    with failure("Failed to update category"):
        try:
            c = crud.update_category(db, category_id, data.name, data.icon)
        except crud.DuplicateNameError:
            raise ApiError("Category name already exists", 409) from None
    if not c:
        raise ApiError("Category not found", 404)
    return category_out(c)


@app.delete("/categories/{category_id:int}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    with failure("Failed to delete category"):
        deleted = crud.delete_category(db, category_id)
    if not deleted:
        raise ApiError("Category not found", 404)
    return {"deleted": category_id}


# ---- Tags ----

@app.get("/tags")
def list_tags(
    source_id: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    db: Session = Depends(get_db),
):
    page_n, limit_n, offset = paging(page, limit, 100)
    with failure("Failed to fetch tags"):
        rows, total = crud.get_tags(db, source_id=int_param(source_id), skip=offset, limit=limit_n)
    return {"data": [tag_out(t) for t in rows], "page": page_n, "limit": limit_n, "total": total}


@app.get("/tags/{tag_id:int}")
def get_tag(tag_id: int, db: Session = Depends(get_db)):
    t = crud.get_tag(db, tag_id)
    if not t:
        raise ApiError("Tag not found", 404)
    return tag_out(t)


@app.post("/tags", status_code=201)
def create_tag(
    body: dict = Depends(json_body),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    data = validate(schemas.TagCreate, body)
    with failure("Failed to create tag"):
        source = target_source(db, data.source_id, settings)
        try:
            t = crud.create_tag(db, source.id, data.name)
        except crud.DuplicateNameError:
            raise ApiError("Tag name already exists", 409) from None
    return tag_out(t)


@app.put("/tags/{tag_id:int}")
def update_tag(tag_id: int, body: dict = Depends(json_body), db: Session = Depends(get_db)):
    data = validate(schemas.TagUpdate, body)
    with failure("Failed to update tag"):
        try:
            t = crud.update_tag(db, tag_id, data.name)
        except crud.DuplicateNameError:
            raise ApiError("Tag name already exists", 409) from None
    if not t:
        raise ApiError("Tag not found", 404)
    return tag_out(t)


@app.delete("/tags/{tag_id:int}")
def delete_tag(tag_id: int, db: Session = Depends(get_db)):
    with failure("Failed to delete tag"):
        deleted = crud.delete_tag(db, tag_id)
    if not deleted:
        raise ApiError("Tag not found", 404)
    return {"deleted": tag_id}


# ---- Recipes ----

@app.get("/recipes")
def list_recipes(
    id: Optional[str] = None,
    category_id: Optional[str] = None,
    source_id: Optional[str] = None,
    q: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    db: Session = Depends(get_db),
):
    recipe_id = int_param(id)
    if recipe_id:
        r = crud.get_recipe(db, recipe_id)
        if not r:
            raise ApiError("Recipe not found", 404)
        return recipe_out(r)

    query = (q or "").strip()
    page_n, limit_n, offset = paging(page, limit, 50)
    sid = int_param(source_id)
    with failure("Failed to fetch recipes"):
        if query:
            rows, total = crud.search_recipes(db, query, source_id=sid, skip=offset, limit=limit_n)
        else:
            rows, total = crud.get_recipes(
                db, category_id=int_param(category_id), source_id=sid, skip=offset, limit=limit_n
            )
    result = {"data": [recipe_out(r) for r in rows], "page": page_n, "limit": limit_n, "total": total}
    if query:
        result["query"] = query
    return result


@app.get("/recipes/random")
def random_recipes(
    count: Optional[str] = None, source_id: Optional[str] = None, db: Session = Depends(get_db)
):
    n = min(100, max(1, int_param(count, 6)))
    with failure("Failed to fetch recipes"):
        rows = crud.get_random_recipes(db, n, source_id=int_param(source_id))
    return {"data": [recipe_out(r) for r in rows]}


@app.get("/recipes/counts")
def recipe_counts(source_id: Optional[str] = None, db: Session = Depends(get_db)):
    with failure("Failed to count recipes"):
        counts = crud.get_recipe_counts(db, source_id=int_param(source_id))
    return {"data": {str(cid): n for cid, n in counts.items()}}


@app.post("/recipes", status_code=201)
def create_recipe(body: dict = Depends(json_body), db: Session = Depends(get_db)):
    data = validate(schemas.RecipeCreate, body)
    with failure("Failed to create recipe"):
        category = crud.get_category(db, data.category_id)
        if not category:
            raise ApiError("Category not found", 404)
        r = crud.create_recipe(db, category, data.model_dump())
    logger.info("Created recipe %s in category %s", r.id, category.id)
    return recipe_out(r)


@app.put("/recipes/{recipe_id:int}")
def update_recipe(recipe_id: int, body: dict = Depends(json_body), db: Session = Depends(get_db)):
    changes = validate(schemas.RecipeUpdate, body).changes()
    if not changes:
        raise ApiError("Nothing to update", 400)
    with failure("Failed to update recipe"):
        category = None
        if "category_id" in changes:
            category = crud.get_category(db, changes["category_id"])
            if not category:
                raise ApiError("Category not found", 404)
        r = crud.update_recipe(db, recipe_id, changes, category=category)
    if not r:
        raise ApiError("Recipe not found", 404)
    return recipe_out(r)


@app.delete("/recipes/{recipe_id:int}")
def delete_recipe(recipe_id: int, db: Session = Depends(get_db)):
    with failure("Failed to delete recipe"):
        deleted = crud.delete_recipe(db, recipe_id)
    if not deleted:
        raise ApiError("Recipe not found", 404)
    return {"deleted": recipe_id}


# Registered last: any other two-segment GET route takes precedence
@app.get("/{prefix:path}/{filename}")
def get_upload(
    prefix: str, filename: str, request: Request, settings: Settings = Depends(get_settings)
):
    if "/" + prefix.strip("/") != settings.upload_url_prefix.rstrip("/"):
        raise ApiError("Not found", 404, path=request.url.path, method=request.method)
    return get_media(filename, settings)
