from ._host_mirrored_coordinator import HostMirroredMemoryCoordinator, host_span

__all__ = ["HostMirroredMemoryCoordinator", "host_span"]
