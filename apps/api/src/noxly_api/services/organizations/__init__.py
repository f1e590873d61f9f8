"""Organization staff scope resolution."""

from .scope import StaffScope, resolve_staff_scope

__all__ = ["StaffScope", "resolve_staff_scope"]
