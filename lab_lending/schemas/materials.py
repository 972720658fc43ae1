from typing import Optional, Union

from pydantic import BaseModel, ConfigDict


class MaterialUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    # Counts stay loose here; the inventory service decides what is a whole number.
    quantity: Optional[Union[int, float, str]] = None
    available: Optional[Union[int, float, str]] = None
    location: Optional[str] = None
    imageUrl: Optional[str] = None
