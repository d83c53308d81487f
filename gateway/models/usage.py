from pydantic import BaseModel


class UsageSummaryResponse(BaseModel):
    api_key_id: str
    total_requests: int
    total_tokens: int
    avg_latency_ms: float
