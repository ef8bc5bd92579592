from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MovementCreate(BaseModel):
    # Unknown fields are rejected: the tenant always comes from the token
    model_config = ConfigDict(extra="forbid")

    produto_id: int = Field(..., gt=0)
    tipo: Literal["entrada", "saida", "ajuste"]
    quantidade: Decimal = Field(..., ge=0, max_digits=12, decimal_places=3)
    motivo: Optional[str] = Field(None, max_length=500)
    lote: Optional[str] = Field(None, min_length=1, max_length=100)
    data_validade: Optional[date] = None
    data_fabricacao: Optional[date] = None

    @model_validator(mode="after")
    def _check_quantity(self):
        if self.tipo != "ajuste" and self.quantidade <= 0:
            raise ValueError("quantidade must be positive for entrada/saida")
        if self.lote is not None and self.tipo != "entrada":
            raise ValueError("lote is only accepted on entrada")
        return self


class DriftCorrection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    motivo: Optional[str] = Field(None, max_length=500)


class LoteResponse(BaseModel):
    id: int
    lote: str
    quantidade_atual: Decimal
    data_validade: Optional[date] = None
    status: str
    status_validade: str
    dias_para_vencimento: Optional[int] = None

    model_config = {"from_attributes": True}


class EstoqueResponse(BaseModel):
    escola_id: int
    produto_id: int
    tenant_id: str
    quantidade: Decimal
    lotes: List[LoteResponse] = Field(default_factory=list)


class AllocationResponse(BaseModel):
    lote_id: int
    quantidade: Decimal


class MovementResponse(BaseModel):
    tipo: str
    escola_id: int
    produto_id: int
    quantidade_anterior: Decimal
    quantidade_atual: Decimal
    quantidade_movimentada: Decimal
    lotes: List[AllocationResponse] = Field(default_factory=list)


class DriftResponse(BaseModel):
    escola_id: int
    produto_id: int
    aggregate: Decimal
    lots: Decimal
    delta: Decimal

    model_config = {"from_attributes": True}
