"""
Loading and saving the recipe document.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from datastash.errors import NotFound, RecipeInvalid
from datastash.models import Recipe
from datastash.store import DocumentStore
from datastash.timers import parse_schedule

logger = logging.getLogger(__name__)

RECIPE_TYPE = 'system'
RECIPE_ID = 'recipe'


def load_recipe_file(path: Path) -> Recipe:
    """Read a recipe from a JSON file."""
    path = Path(path).expanduser()
    with open(path, 'r') as f:
        data = json.load(f)
    return Recipe.from_dict(data)


def load_recipe(store: DocumentStore) -> Recipe:
    """
    Fetch the stored recipe, with its revision.

    Raises:
        NotFound: If no recipe has been set up
    """
    return Recipe.from_dict(store.get(RECIPE_TYPE, RECIPE_ID))


def save_recipe(store: DocumentStore, recipe: Recipe, revision: Optional[str] = None) -> Recipe:
    """
    Validate and store a recipe.

    Args:
        store: Document store
        recipe: Recipe to store
        revision: Current revision when replacing a stored recipe

    Returns:
        The recipe carrying its new revision

    Raises:
        RecipeInvalid: If the recipe fails validation
        ScheduleInvalid: If the schedule isn't a valid cron expression
        Conflict: If revision isn't the stored recipe's current revision
    """
    errors = recipe.validate()
    if errors:
        raise RecipeInvalid(errors)
    if recipe.schedule:
        parse_schedule(recipe.schedule)

    stored = store.put(RECIPE_TYPE, RECIPE_ID, recipe.to_dict(), revision=revision)
    recipe.revision = stored.revision
    logger.info(f"Saved recipe '{recipe.name}' (revision {stored.revision})")
    return recipe


def install_recipe(store: DocumentStore, recipe: Recipe) -> Recipe:
    """Store a recipe, replacing whatever is stored now."""
    try:
        current = store.get(RECIPE_TYPE, RECIPE_ID)['revision']
    except NotFound:
        current = None
    return save_recipe(store, recipe, revision=current)
