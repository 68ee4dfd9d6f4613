from typing import Dict, Iterator, List, Optional, Tuple

from .models import RuntimeInstance


class InstanceRegistry:
    """In-memory map of tenant id to its running terminal.

    Empty at process start. Owned by the lifecycle manager; at most one
    entry per tenant.
    """

    def __init__(self):
        self._instances: Dict[int, RuntimeInstance] = {}

    def register(self, instance: RuntimeInstance) -> None:
        if instance.tenant_id in self._instances:
            raise ValueError(f"Tenant {instance.tenant_id} already has a registered instance")
        self._instances[instance.tenant_id] = instance

    def get(self, tenant_id: int) -> Optional[RuntimeInstance]:
        return self._instances.get(tenant_id)

    def remove(self, tenant_id: int) -> Optional[RuntimeInstance]:
        return self._instances.pop(tenant_id, None)

    def tenant_ids(self) -> List[int]:
        return list(self._instances)

    def items(self) -> List[Tuple[int, RuntimeInstance]]:
        # Snapshot so callers may deregister while iterating
        return list(self._instances.items())

    def __contains__(self, tenant_id: int) -> bool:
        return tenant_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    def __iter__(self) -> Iterator[RuntimeInstance]:
        return iter(list(self._instances.values()))
