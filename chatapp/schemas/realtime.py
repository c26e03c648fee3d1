from pydantic import BaseModel
from typing import Dict, Optional

class SubscriptionIn(BaseModel):
    action: str  # subscribe, unsubscribe
    table: str
    filter: Optional[Dict[str, str]] = None
