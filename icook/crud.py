import json
import logging
import random

from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)


class DuplicateNameError(Exception):
    """Raised when a category or tag name is already taken within its source."""


def _like_pattern(q: str) -> str:
    escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _dump(items) -> str:
    return json.dumps(items, ensure_ascii=False)


def derive_ingredients(steps) -> list:
    """Sorted union of every step's ingredients."""
    found = set()
    for step in steps or []:
        found.update(step.get("ingredients") or [])
    return sorted(found)


# ---- Sources ----

def get_source(db: Session, source_id: int):
    return db.query(models.Source).filter(models.Source.id == source_id).first()


def get_source_by_name(db: Session, name: str):
    return db.query(models.Source).filter(models.Source.name == name).first()


def get_sources(db: Session, skip: int = 0, limit: int = 100):
    query = db.query(models.Source)
    total = query.count()
    rows = query.order_by(models.Source.name).offset(skip).limit(limit).all()
    return rows, total


def create_source(db: Session, name: str, is_personal: bool = True, owner: str = ""):
    db_source = models.Source(name=name, is_personal=is_personal, owner=owner or "")
    db.add(db_source)
    db.commit()
    db.refresh(db_source)
    logger.info("Created source %s (%s)", db_source.id, name)
    return db_source


def get_or_create_default_source(db: Session, name: str, owner: str):
    existing = (
        db.query(models.Source)
        .filter(models.Source.name == name, models.Source.is_personal.is_(True))
        .order_by(models.Source.id)
        .first()
    )
    if existing:
        return existing
    return create_source(db, name, is_personal=True, owner=owner)


def update_source(db: Session, source_id: int, name: str):
    db_source = get_source(db, source_id)
    if not db_source:
        return None
    db_source.name = name
    db.commit()
    db.refresh(db_source)
    return db_source


def delete_source(db: Session, source_id: int):
    db_source = get_source(db, source_id)
    if not db_source:
        return False
    db.delete(db_source)
    db.commit()
    logger.info("Deleted source %s with its categories and recipes", source_id)
    return True


# ---- Categories ----

def get_category(db: Session, category_id: int):
    return db.query(models.Category).filter(models.Category.id == category_id).first()


def find_category(db: Session, source_id: int, name: str):
    """Case-insensitive lookup of a category by name within a source."""
    return (
        db.query(models.Category)
        .filter(
            models.Category.source_id == source_id,
            func.lower(models.Category.name) == name.lower(),
        )
        .first()
    )


def get_categories(
    db: Session, q: str = "", source_id: int = None, skip: int = 0, limit: int = 100
):
    query = db.query(models.Category)
    if source_id:
        query = query.filter(models.Category.source_id == source_id)
    if q:
        query = query.filter(models.Category.name.like(_like_pattern(q), escape="\\"))
    total = query.count()
    rows = query.order_by(models.Category.name).offset(skip).limit(limit).all()
    return rows, total


def create_category(db: Session, source_id: int, name: str, icon: str):
    if find_category(db, source_id, name):
        raise DuplicateNameError(name)
    db_category = models.Category(source_id=source_id, name=name, icon=icon)
    db.add(db_category)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateNameError(name) from e
    db.refresh(db_category)
    return db_category


def update_category(db: Session, category_id: int, name: str, icon: str):
    db_category = get_category(db, category_id)
    if not db_category:
        return None
    clash = find_category(db, db_category.source_id, name)
    if clash and clash.id != db_category.id:
        raise DuplicateNameError(name)
    db_category.name = name
    db_category.icon = icon
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateNameError(name) from e
    db.refresh(db_category)
    return db_category


def delete_category(db: Session, category_id: int):
    db_category = get_category(db, category_id)
    if not db_category:
        return False
    db.delete(db_category)
    db.commit()
    return True


# ---- Tags ----

def get_tag(db: Session, tag_id: int):
    return db.query(models.Tag).filter(models.Tag.id == tag_id).first()


def find_tag(db: Session, source_id: int, name: str):
    return (
        db.query(models.Tag)
        .filter(models.Tag.source_id == source_id, func.lower(models.Tag.name) == name.lower())
        .first()
    )


def get_tags(db: Session, source_id: int = None, skip: int = 0, limit: int = 100):
    query = db.query(models.Tag)
    if source_id:
        query = query.filter(models.Tag.source_id == source_id)
    total = query.count()
    rows = query.order_by(models.Tag.name).offset(skip).limit(limit).all()
    return rows, total


def create_tag(db: Session, source_id: int, name: str):
    if find_tag(db, source_id, name):
        raise DuplicateNameError(name)
    db_tag = models.Tag(source_id=source_id, name=name)
    db.add(db_tag)
    db.commit()
    db.refresh(db_tag)
    return db_tag


def update_tag(db: Session, tag_id: int, name: str):
    db_tag = get_tag(db, tag_id)
    if not db_tag:
        return None
    clash = find_tag(db, db_tag.source_id, name)
    if clash and clash.id != db_tag.id:
        raise DuplicateNameError(name)
    db_tag.name = name
    db.commit()
    db.refresh(db_tag)
    return db_tag


def delete_tag(db: Session, tag_id: int):
    db_tag = get_tag(db, tag_id)
    if not db_tag:
        return False
    db.delete(db_tag)
    db.commit()
    return True


# ---- Recipes ----

def get_recipe(db: Session, recipe_id: int):
    return db.query(models.Recipe).filter(models.Recipe.id == recipe_id).first()


def find_recipe(db: Session, category_id: int, name: str):
    return (
        db.query(models.Recipe)
        .filter(
            models.Recipe.category_id == category_id,
            func.lower(models.Recipe.name) == name.lower(),
        )
        .first()
    )


def get_recipes(
    db: Session,
    category_id: int = None,
    source_id: int = None,
    skip: int = 0,
    limit: int = 50,
):
    query = db.query(models.Recipe)
    if source_id:
        query = query.filter(models.Recipe.source_id == source_id)
    if category_id:
        query = query.filter(models.Recipe.category_id == category_id)
        order = models.Recipe.name
    else:
        order = models.Recipe.id.desc()
    total = query.count()
    rows = query.order_by(order).offset(skip).limit(limit).all()
    return rows, total


def search_recipes(
    db: Session, q: str, source_id: int = None, skip: int = 0, limit: int = 50
):
    """Match name, details or ingredients; name matches sort first."""
    pattern = _like_pattern(q)
    name_match = models.Recipe.name.like(pattern, escape="\\")
    query = db.query(models.Recipe).filter(
        or_(
            name_match,
            models.Recipe.details.like(pattern, escape="\\"),
            models.Recipe.ingredients.like(pattern, escape="\\"),
        )
    )
    if source_id:
        query = query.filter(models.Recipe.source_id == source_id)
    total = query.count()
    rows = (
        query.order_by(case((name_match, 1), else_=2), models.Recipe.name)
        .offset(skip)
        .limit(limit)
        .all()
    )
    return rows, total


def get_random_recipes(db: Session, count: int, source_id: int = None):
    query = db.query(models.Recipe.id)
    if source_id:
        query = query.filter(models.Recipe.source_id == source_id)
    ids = [row[0] for row in query.all()]
    picked = random.sample(ids, min(count, len(ids)))
    if not picked:
        return []
    rows = db.query(models.Recipe).filter(models.Recipe.id.in_(picked)).all()
    by_id = {r.id: r for r in rows}
    return [by_id[i] for i in picked if i in by_id]


def get_recipe_counts(db: Session, source_id: int = None) -> dict:
    query = db.query(models.Recipe.category_id, func.count(models.Recipe.id))
    if source_id:
        query = query.filter(models.Recipe.source_id == source_id)
    return {cid: n for cid, n in query.group_by(models.Recipe.category_id).all()}


def _apply_steps(values: dict):
    # Ingredients follow the steps unless the caller sent them explicitly
    if values.get("steps") is not None:
        steps = values["steps"]
        if values.get("ingredients") is None:
            values["ingredients"] = derive_ingredients(steps)
        values["steps"] = _dump(steps)
    if "ingredients" in values and values["ingredients"] is not None:
        values["ingredients"] = _dump(values["ingredients"])


def create_recipe(db: Session, category: models.Category, values: dict, commit: bool = True):
    values = dict(values)
    values.pop("category_id", None)
    if values.get("steps") is None:
        values.pop("steps", None)
    _apply_steps(values)
    db_recipe = models.Recipe(
        source_id=category.source_id, category_id=category.id, **values
    )
    db.add(db_recipe)
    if commit:
        db.commit()
        db.refresh(db_recipe)
    return db_recipe


def update_recipe(db: Session, recipe_id: int, changes: dict, category=None):
    db_recipe = get_recipe(db, recipe_id)
    if not db_recipe:
        return None
    changes = dict(changes)
    changes.pop("category_id", None)
    _apply_steps(changes)
    if category is not None:
        db_recipe.category_id = category.id
        db_recipe.source_id = category.source_id
    for key, value in changes.items():
        setattr(db_recipe, key, value)
    db.commit()
    db.refresh(db_recipe)
    return db_recipe


def delete_recipe(db: Session, recipe_id: int):
    db_recipe = get_recipe(db, recipe_id)
    if not db_recipe:
        return False
    db.delete(db_recipe)
    db.commit()
    return True
