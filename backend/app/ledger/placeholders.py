from __future__ import annotations

from .client import LedgerClient

WALK_IN_CUSTOMER_NAME = "Walk-in Customer"
MISC_ITEM_NAMES = {
    "service": "Miscellaneous Service",
    "product": "Miscellaneous Product",
}
ITEM_TYPES = {
    "service": "Service",
    "product": "NonInventory",
}


class PlaceholderResolver:
    """
    Resolves the well-known fallback records: the Walk-in Customer (sales with
    no customer) and the Miscellaneous Service/Product items (lines whose
    catalog row is gone).

    One resolver per sync run. The cache only saves repeated lookups within
    that run; a miss always searches the ledger by name before creating.
    """

    def __init__(self):
        self._cache: dict[str, str] = {}

    async def walk_in_customer(self, client: LedgerClient) -> str:
        key = "customer:walk_in"
        if key in self._cache:
            return self._cache[key]
        existing = await client.find_customer_by_name(WALK_IN_CUSTOMER_NAME)
        if existing:
            remote_id = str(existing["Id"])
        else:
            created = await client.create_customer(
                {"DisplayName": WALK_IN_CUSTOMER_NAME, "GivenName": "Walk-in", "FamilyName": "Customer"}
            )
            remote_id = str(created["Id"])
        self._cache[key] = remote_id
        return remote_id

    async def misc_item(self, client: LedgerClient, kind: str, income_account_id: str) -> str:
        key = f"item:{kind}"
        if key in self._cache:
            return self._cache[key]
        name = MISC_ITEM_NAMES[kind]
        existing = await client.find_item_by_name(name)
        if existing:
            remote_id = str(existing["Id"])
        else:
            created = await client.create_item(
                {"Name": name, "Type": ITEM_TYPES[kind], "IncomeAccountRef": {"value": income_account_id}}
            )
            remote_id = str(created["Id"])
        self._cache[key] = remote_id
        return remote_id
