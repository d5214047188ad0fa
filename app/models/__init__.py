from app.models.pipeline_record import PipelineRecord, PipelineStatus, TriggerSource  # noqa: F401
from app.models.repo_config import RepoPlatform, RepositoryConfig  # noqa: F401
