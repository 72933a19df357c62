"""Agent implementations."""

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.agents.concept_planner import ConceptPlanner
from recipegen.ai.agents.image_generator import ImageGenerator
from recipegen.ai.agents.image_storage import ImageStorageUploader
from recipegen.ai.agents.nutrition_validator import NutritionValidator
from recipegen.ai.agents.persistence import PersistenceOrchestrator
from recipegen.ai.agents.recipe_generator import RecipeGenerator

__all__ = ["BaseAgent", "ConceptPlanner", "ImageGenerator", "ImageStorageUploader", "NutritionValidator", "PersistenceOrchestrator", "RecipeGenerator"]
