from .vm import VM, VM_STATUS_RUNNING, VM_STATUS_STOPPED, VM_STATUSES

__all__ = ["VM", "VM_STATUS_RUNNING", "VM_STATUS_STOPPED", "VM_STATUSES"]
