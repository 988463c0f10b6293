from app.models.job import Job, JobChunk, JobStep
from app.models.record import Record

__all__ = ["Job", "JobChunk", "JobStep", "Record"]
