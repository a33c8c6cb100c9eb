from dataclasses import dataclass

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class Tenant:
    owner_id: str
    brand_id: str


async def get_tenant(
    x_owner_id: str | None = Header(default=None),
    x_brand_id: str | None = Header(default=None),
) -> Tenant:
    owner_id = (x_owner_id or "").strip()
    brand_id = (x_brand_id or "").strip()
    if not owner_id or not brand_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing tenant headers")
    return Tenant(owner_id=owner_id, brand_id=brand_id)
