"""Package metadata for deploypipe."""

__app_name__ = "deploypipe"
__version__ = "0.4.0"
__description__ = "Deployment pipeline orchestrator with guaranteed cleanup"
__license_type__ = "MIT"
