"""Pipeline contracts exchanged between stages."""

from recipegen.ai.pipeline.contracts import (
  ChunkDescriptor,
  Concept,
  ConceptPlan,
  FeatureFlags,
  GeneratedItem,
  GenerationChunk,
  GenerationOptions,
  GenerationRequest,
  ImageAsset,
  ImageRequest,
  Ingredient,
  PersistenceBatch,
  RecordId,
  SavedRecord,
  SaveReport,
  TargetConstraints,
  UploadResult,
  ValidatedItem,
  ValidationBatch,
  ValidationIssue,
)

__all__ = [
  "ChunkDescriptor",
  "Concept",
  "ConceptPlan",
  "FeatureFlags",
  "GeneratedItem",
  "GenerationChunk",
  "GenerationOptions",
  "GenerationRequest",
  "ImageAsset",
  "ImageRequest",
  "Ingredient",
  "PersistenceBatch",
  "RecordId",
  "SavedRecord",
  "SaveReport",
  "TargetConstraints",
  "UploadResult",
  "ValidatedItem",
  "ValidationBatch",
  "ValidationIssue",
]
