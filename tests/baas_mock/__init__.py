"""In-memory control plane for reconciler and engine tests.

Implements the ``Gateway`` protocol without any network access.

Key Features:
- In-memory resources addressed by kind, parent keys and id
- Scripted state sequences for asynchronously provisioned kinds
- Call log for asserting exactly which remote calls happened
- Error injection (status codes and transport failures)

Usage:
    from baas_mock import MockControlPlane

    plane = MockControlPlane()
    plane.script_states("environment", ["provisioning", "live"])
    reconciler = ResourceReconciler(get_kind("environment"), plane)
    result = await reconciler.create(spec)

    assert plane.count("get") == 2
"""

from .control_plane import MockCall, MockControlPlane, MockResource
from .timing import FakeClock, RecordingRetry

__all__ = [
    "FakeClock",
    "MockCall",
    "MockControlPlane",
    "MockResource",
    "RecordingRetry",
]
