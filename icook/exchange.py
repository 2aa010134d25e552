import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import crud, models, schemas

logger = logging.getLogger(__name__)


class InvalidPackageError(ValueError):
    pass


def parse_package(data) -> schemas.RecipeExportPackage:
    try:
        return schemas.RecipeExportPackage.model_validate(data)
    except ValidationError as e:
        raise InvalidPackageError(str(e)) from e


def load_package(path) -> schemas.RecipeExportPackage:
    """Load an export package from a JSON file.

    Args:
        path (str or Path): Path to the JSON file.

    Returns:
        RecipeExportPackage: the parsed package.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise InvalidPackageError(f"{p}: {e}") from e
    return parse_package(data)


def export_source(db: Session, source: models.Source) -> schemas.RecipeExportPackage:
    categories = (
        db.query(models.Category)
        .filter(models.Category.source_id == source.id)
        .order_by(models.Category.name)
        .all()
    )
    recipes = (
        db.query(models.Recipe)
        .filter(models.Recipe.source_id == source.id)
        .order_by(models.Recipe.name)
        .all()
    )
    exported = []
    for r in recipes:
        stored = schemas.Recipe.model_validate(r)
        exported.append(
            schemas.ExportedRecipe(
                name=r.name,
                recipeTime=r.recipe_time or 0,
                details=r.details,
                categoryName=r.category.name,
                recipeSteps=stored.steps,
                lastModified=r.last_modified,
            )
        )
    return schemas.RecipeExportPackage(
        sourceName=source.name,
        exportedAt=datetime.now(timezone.utc),
        categories=[schemas.ExportedCategory(name=c.name, icon=c.icon) for c in categories],
        recipes=exported,
    )


def import_package(
    db: Session,
    source: models.Source,
    package: schemas.RecipeExportPackage,
    dry_run: bool = False,
    default_icon: str = "fork.knife",
) -> schemas.ImportSummary:
    """Merge a package into ``source``.

    Categories are matched by name ignoring case and created when missing.
    Recipes already present in their target category (same name, ignoring
    case) are skipped. With ``dry_run`` nothing is written.
    """
    summary = schemas.ImportSummary(source_id=source.id, dry_run=dry_run)
    icons = {c.name.lower(): (c.name, c.icon) for c in package.categories}
    for r in package.recipes:
        icons.setdefault(r.categoryName.lower(), (r.categoryName, default_icon))

    # lowercase name -> Category, or None when the category is only planned
    targets = {}
    for key, (name, icon) in icons.items():
        existing = crud.find_category(db, source.id, name)
        if existing:
            targets[key] = existing
            summary.categories_existing.append(existing.name)
            continue
        summary.categories_created.append(name)
        if dry_run:
            targets[key] = None
        else:
            category = models.Category(source_id=source.id, name=name, icon=icon)
            db.add(category)
            db.flush()
            targets[key] = category

    seen = set()
    for r in package.recipes:
        key = r.categoryName.lower()
        marker = (key, r.name.lower())
        category = targets[key]
        duplicate = marker in seen or (
            category is not None
            and category.id is not None
            and crud.find_recipe(db, category.id, r.name) is not None
        )
        seen.add(marker)
        if duplicate:
            summary.recipes_skipped.append(r.name)
            continue
        summary.recipes_created.append(r.name)
        if dry_run:
            continue
        steps = [s.model_dump() for s in r.recipeSteps]
        crud.create_recipe(
            db,
            category,
            {
                "name": r.name,
                "recipe_time": r.recipeTime,
                "details": r.details,
                "steps": steps,
                "ingredients": None,
                "last_modified": r.lastModified,
            },
            commit=False,
        )

    if dry_run:
        db.rollback()
    else:
        db.commit()
        logger.info(
            "Imported %d recipes (%d skipped) into source %s",
            len(summary.recipes_created),
            len(summary.recipes_skipped),
            source.id,
        )
    return summary
