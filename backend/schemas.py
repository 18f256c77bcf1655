
from typing import Literal, Optional

from pydantic import BaseModel, Field

class NonceRequest(BaseModel):
    address: str

class VerifyRequest(BaseModel):
    address: str
    signature: str

class EarnRequest(BaseModel):
    amount: float
    ref: Optional[str] = Field(default=None, max_length=200)

class CoinPurchaseRequest(BaseModel):
    ethAmount: float
    txHash: str

class DiceRequest(BaseModel):
    prediction: Literal["high", "low"]

class MarketplacePurchaseRequest(BaseModel):
    listingId: str
    buyer: str
    amountEth: float = Field(gt=0)
    txHash: str
