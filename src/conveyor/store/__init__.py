from conveyor.store.base import ArtifactKey, ArtifactKind, ArtifactStore, validate_unit
from conveyor.store.files import FileArtifactStore

__all__ = ["ArtifactKey", "ArtifactKind", "ArtifactStore", "FileArtifactStore", "validate_unit"]
