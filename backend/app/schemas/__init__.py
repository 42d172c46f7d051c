"""Pydantic request schemas shared by the routers and the services.

Monetary fields are strict integers in minor units: floats, numeric strings
and booleans are rejected at the boundary.
"""
from typing import Annotated

from pydantic import Field

MinorUnits = Annotated[int, Field(ge=0, strict=True)]
PositiveMinorUnits = Annotated[int, Field(gt=0, strict=True)]
