import argparse
import logging

from icook import crud, exchange
from icook.config import get_settings
from icook.db import SessionLocal, init_db
from icook.main import setup_logging

logger = logging.getLogger("import_data")


def main(argv=None):
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Import a recipe export package.")
    parser.add_argument("package", help="JSON file written by a source export")
    parser.add_argument("--source", help="target source name (default: the package's sourceName)")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    init_db()
    try:
        package = exchange.load_package(args.package)
    except (OSError, exchange.InvalidPackageError) as e:
        logger.error("Cannot read %s: %s", args.package, e)
        return 1

    name = args.source or package.sourceName
    db = SessionLocal()
    try:
        source = crud.get_source_by_name(db, name)
        if source is None and args.dry_run:
            print(f"Would create source '{name}' and import {len(package.recipes)} recipes")
            return 0
        if source is None:
            source = crud.create_source(db, name, owner=settings.default_owner)
        summary = exchange.import_package(
            db, source, package, dry_run=args.dry_run,
            default_icon=settings.default_category_icon,
        )
    finally:
        db.close()

    verb = "Would import" if args.dry_run else "Imported"
    print(
        f"{verb} {len(summary.recipes_created)} recipes into '{name}' "
        f"({len(summary.recipes_skipped)} skipped, "
        f"{len(summary.categories_created)} new categories)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
