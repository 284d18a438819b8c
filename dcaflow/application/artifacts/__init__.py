from .artifact_store import ArtifactStats, ArtifactStore

__all__ = ["ArtifactStats", "ArtifactStore"]
