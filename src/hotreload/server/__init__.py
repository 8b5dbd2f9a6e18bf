"""HTTP server side of the hot reload protocol."""

from hotreload.server.admission import AdmissionResult, HotReloadAdmission
from hotreload.server.app import create_app

__all__ = ["AdmissionResult", "HotReloadAdmission", "create_app"]
