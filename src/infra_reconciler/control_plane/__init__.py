"""Control planes the executor applies operations against."""
from infra_reconciler.control_plane.base import ControlPlane
from infra_reconciler.control_plane.local import LocalControlPlane


def create_control_plane(settings) -> ControlPlane:
    """Pick the control plane for the configured deployment mode."""
    if settings.uses_aws:
        from infra_reconciler.aws.control_plane import AwsControlPlane
        from infra_reconciler.aws.clients import AWSClientManager
        return AwsControlPlane(AWSClientManager(settings), app_name=settings.app_name)
    return LocalControlPlane(settings.local_store_file)


__all__ = ["ControlPlane", "LocalControlPlane", "create_control_plane"]
