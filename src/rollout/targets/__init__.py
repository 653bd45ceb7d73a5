"""
Targets — environments and the hosts they resolve to.
"""

from rollout.targets.registry import Host, Target, TargetRegistry, inventory_from_dict, load_inventory

__all__ = ["Host", "Target", "TargetRegistry", "inventory_from_dict", "load_inventory"]
