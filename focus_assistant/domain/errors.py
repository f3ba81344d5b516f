from typing import Dict, Any, Optional


class AssistantError(Exception):
    """Base error for the assistant core"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for logs and API responses"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details
        }


class ModelLoadError(AssistantError):
    """Model file missing, corrupt, or too large for available memory"""


class InferenceError(AssistantError):
    """Generation invoked without a ready session, or engine-level failure"""


class ActionExecutionError(AssistantError):
    """A parsed action could not be applied to the data layer"""


class EntityNotFoundError(AssistantError):
    """Repository lookup by id or title found nothing"""
