from services.storage.detection_store import DetectionStore, InMemoryDetectionStore

__all__ = ["DetectionStore", "InMemoryDetectionStore"]
