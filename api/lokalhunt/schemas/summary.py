from pydantic import BaseModel


class ReviewSummaryOut(BaseModel):
    pending_ads: int
    pending_ads_without_mou: int
    pending_employers: int
    active_mous: int
    expiring_mous: int
