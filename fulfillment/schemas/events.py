from pydantic import BaseModel, Field


class GenerateReportCommand(BaseModel):
    order_id: str
    attempt: int = Field(ge=1)


class ReportGeneratedEvent(BaseModel):
    order_id: str
    attempt: int
