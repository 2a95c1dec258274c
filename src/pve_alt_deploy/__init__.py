"""Deploy Alt Workstation VMs onto Proxmox VE hosts."""

__version__ = "0.3.0"
