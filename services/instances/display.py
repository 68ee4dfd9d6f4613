from typing import Dict, Optional

from core.utils.exceptions import DisplayPoolExhaustedError


class DisplayAllocator:
    """Assigns virtual display numbers to tenants.

    A tenant's preferred slot is ``base + tenant_id % pool_size``. When that
    slot is held by another tenant the allocator probes forward through the
    pool, so two tenants sharing a residue never get the same display.
    """

    def __init__(self, base: int = 100, pool_size: int = 200):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.base = base
        self.pool_size = pool_size
        self._assigned: Dict[int, int] = {}

    def preferred(self, tenant_id: int) -> int:
        return self.base + (tenant_id % self.pool_size)

    def allocate(self, tenant_id: int) -> int:
        if tenant_id in self._assigned:
            return self._assigned[tenant_id]

        taken = set(self._assigned.values())
        start = tenant_id % self.pool_size
        for offset in range(self.pool_size):
            display = self.base + (start + offset) % self.pool_size
            if display not in taken:
                self._assigned[tenant_id] = display
                return display

        raise DisplayPoolExhaustedError(tenant_id, self.pool_size)

    def release(self, tenant_id: int) -> Optional[int]:
        return self._assigned.pop(tenant_id, None)

    def assigned(self, tenant_id: int) -> Optional[int]:
        return self._assigned.get(tenant_id)

    def in_use(self) -> Dict[int, int]:
        return dict(self._assigned)
