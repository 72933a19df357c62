from fastapi import HTTPException, Request, status

from recipegen.ai.coordinator import Coordinator


def get_coordinator(request: Request) -> Coordinator:
  """Return the coordinator wired at startup."""
  coordinator = getattr(request.app.state, "coordinator", None)
  if coordinator is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Batch generation is not configured.")
  return coordinator
