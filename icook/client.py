"""HTTP client for the iCook API.

Requests go through the ``?route=`` form so the client works against both
this service and hosts that only expose the script path. Listing calls keep a
snapshot on disk when a ``cache_dir`` is given and fall back to it while the
server cannot be reached.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import httpx
from pydantic import ValidationError

from . import schemas
from .cache import ImageCache, SnapshotCache, version_token

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000/api.php"


class APIError(Exception):
    pass


class BadStatus(APIError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class DecodingError(APIError):
    def __init__(self, message: str):
        super().__init__(f"Decoding error: {message}")


class TransportError(APIError):
    def __init__(self, message: str):
        super().__init__(f"Network error: {message}")


@dataclass
class Page:
    data: List = field(default_factory=list)
    page: int = 1
    limit: int = 0
    total: int = 0
    query: Optional[str] = None


class ICookClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, http: httpx.Client = None,
                 cache_dir=None, timeout: float = 10.0):
        self.base_url = base_url
        self.http = http or httpx.Client(timeout=timeout)
        self.snapshots = None
        self.images = None
        if cache_dir is not None:
            self.snapshots = SnapshotCache(Path(cache_dir) / "snapshots")
            self.images = ImageCache(Path(cache_dir) / "images")
        # True while answers come from snapshots instead of the server
        self.offline = False

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---- plumbing ----

    def _request(self, method: str, route: str, params: dict = None, **kwargs):
        query = {"route": route}
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value
        try:
            resp = self.http.request(method, self.base_url, params=query, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(str(e)) from e
        if not resp.is_success:
            raise BadStatus(resp.status_code, resp.text or "<no body>")
        self.offline = False
        try:
            return resp.json()
        except ValueError as e:
            raise DecodingError(str(e)) from e

    @staticmethod
    def _parse(model, data):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DecodingError(str(e)) from e

    def _page(self, model, payload) -> Page:
        if not isinstance(payload, dict):
            raise DecodingError("expected a page object")
        return Page(
            data=[self._parse(model, item) for item in payload.get("data", [])],
            page=payload.get("page", 1),
            limit=payload.get("limit", 0),
            total=payload.get("total", 0),
            query=payload.get("query"),
        )

    def _listing(self, scope: tuple, route: str, params: dict):
        try:
            payload = self._request("GET", route, params)
        except TransportError:
            snapshot = self.snapshots.load(*scope) if self.snapshots else None
            if snapshot is None:
                raise
            logger.warning("Server unreachable; serving cached %s", route)
            self.offline = True
            return snapshot
        if self.snapshots:
            self.snapshots.save(payload, *scope)
        return payload

    # ---- sources ----

    def list_sources(self, page: int = 1, limit: int = 100) -> Page:
        payload = self._listing(("sources", page), "/sources", {"page": page, "limit": limit})
        return self._page(schemas.Source, payload)

    def create_source(self, name: str, is_personal: bool = True) -> schemas.Source:
        data = self._request("POST", "/sources", json={"name": name, "is_personal": is_personal})
        return self._parse(schemas.Source, data)

    def update_source(self, source_id: int, name: str) -> schemas.Source:
        data = self._request("PUT", f"/sources/{source_id}", json={"name": name})
        return self._parse(schemas.Source, data)

    def delete_source(self, source_id: int):
        return self._request("DELETE", f"/sources/{source_id}")

    def export_source(self, source_id: int) -> schemas.RecipeExportPackage:
        data = self._request("GET", f"/sources/{source_id}/export")
        return self._parse(schemas.RecipeExportPackage, data)

    def import_package(self, source_id: int, package: schemas.RecipeExportPackage,
                       dry_run: bool = False) -> schemas.ImportSummary:
        data = self._request(
            "POST",
            f"/sources/{source_id}/import",
            {"dry_run": "true" if dry_run else "false"},
            json=package.model_dump(mode="json"),
        )
        return self._parse(schemas.ImportSummary, data)

    # ---- categories ----

    def list_categories(self, q: str = None, page: int = 1, limit: int = 100,
                        source_id: int = None) -> Page:
        params = {"page": page, "limit": limit, "source_id": source_id}
        if q:
            params["q"] = q
        scope = ("categories", source_id or "all", q or "", page)
        return self._page(schemas.Category, self._listing(scope, "/categories", params))

    def get_category(self, category_id: int) -> schemas.Category:
        return self._parse(schemas.Category, self._request("GET", f"/categories/{category_id}"))

    def create_category(self, name: str, icon: str, source_id: int = None) -> schemas.Category:
        body = {"name": name, "icon": icon}
        if source_id is not None:
            body["source_id"] = source_id
        return self._parse(schemas.Category, self._request("POST", "/categories", json=body))

    def update_category(self, category_id: int, name: str, icon: str) -> schemas.Category:
        data = self._request("PUT", f"/categories/{category_id}", json={"name": name, "icon": icon})
        return self._parse(schemas.Category, data)

    def delete_category(self, category_id: int):
        return self._request("DELETE", f"/categories/{category_id}")

    # ---- tags ----

    def list_tags(self, source_id: int = None, page: int = 1, limit: int = 100) -> Page:
        params = {"page": page, "limit": limit, "source_id": source_id}
        scope = ("tags", source_id or "all", page)
        return self._page(schemas.Tag, self._listing(scope, "/tags", params))

    def create_tag(self, name: str, source_id: int = None) -> schemas.Tag:
        body = {"name": name}
        if source_id is not None:
            body["source_id"] = source_id
        return self._parse(schemas.Tag, self._request("POST", "/tags", json=body))

    def update_tag(self, tag_id: int, name: str) -> schemas.Tag:
        return self._parse(schemas.Tag, self._request("PUT", f"/tags/{tag_id}", json={"name": name}))

    def delete_tag(self, tag_id: int):
        return self._request("DELETE", f"/tags/{tag_id}")

    # ---- recipes ----

    def list_recipes(self, category_id: int = None, q: str = None, source_id: int = None,
                     page: int = 1, limit: int = 50) -> Page:
        params = {"page": page, "limit": limit, "category_id": category_id, "source_id": source_id}
        if q:
            params["q"] = q
        scope = ("recipes", source_id or "all", category_id or "all", q or "", page)
        return self._page(schemas.Recipe, self._listing(scope, "/recipes", params))

    def random_recipes(self, count: int = 6, source_id: int = None) -> List[schemas.Recipe]:
        payload = self._request("GET", "/recipes/random", {"count": count, "source_id": source_id})
        return [self._parse(schemas.Recipe, item) for item in payload.get("data", [])]

    def get_recipe(self, recipe_id: int) -> schemas.Recipe:
        return self._parse(schemas.Recipe, self._request("GET", "/recipes", {"id": recipe_id}))

    def create_recipe(self, category_id: int, name: str, **fields) -> schemas.Recipe:
        body = dict(fields, category_id=category_id, name=name)
        return self._parse(schemas.Recipe, self._request("POST", "/recipes", json=body))

    def update_recipe(self, recipe_id: int, **fields) -> schemas.Recipe:
        data = self._request("PUT", f"/recipes/{recipe_id}", json=fields)
        return self._parse(schemas.Recipe, data)

    def delete_recipe(self, recipe_id: int):
        return self._request("DELETE", f"/recipes/{recipe_id}")

    # ---- media ----

    def upload_image(self, data: bytes, filename: str = "image.jpg",
                     mime: str = "image/jpeg") -> dict:
        return self._request("POST", "/media", files={"file": (filename, data, mime)})

    def fetch_image(self, recipe: schemas.Recipe):
        """Local path of the recipe's image, downloading it when the cached version is stale.

        Returns None when the recipe has no image or nothing is cached and the
        server is unreachable.
        """
        if not recipe.image or self.images is None:
            return None
        token = version_token(recipe.last_modified)
        exact = self.images.path_for(recipe.id, token)
        if exact.exists():
            return exact
        url = httpx.URL(self.base_url).join(recipe.image)
        try:
            resp = self.http.get(url)
        except httpx.TransportError as e:
            logger.warning("Image download failed for recipe %s: %s", recipe.id, e)
            return self.images.cached_path(recipe.id)
        if not resp.is_success:
            raise BadStatus(resp.status_code, resp.text or "<no body>")
        return self.images.store(recipe.id, token, resp.content)
