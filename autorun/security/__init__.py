from .policy import PolicyEngine, PrivilegeCheck

__all__ = ["PolicyEngine", "PrivilegeCheck"]
