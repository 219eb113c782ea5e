"""azwinrm - WinRM HTTPS enablement for Azure resource groups

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Idempotent reconciliation (safe to re-run)
- Fail with actionable messages

azwinrm makes the Windows VMs of a resource group reachable over WinRM HTTPS:
it adds inbound NAT rules on load balancers, installs the WinRM-configuring
Custom Script Extension, and opens port 5986 on every network security group.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
