"""Central model registry: import all models so Alembic autodiscover works."""

from merenda.database import Base  # noqa: F401

from merenda.models.tenant import Tenant  # noqa: F401
from merenda.models.escola import Escola  # noqa: F401
from merenda.models.produto import Produto  # noqa: F401
from merenda.models.estoque import (  # noqa: F401
    EstoqueEscola,
    EstoqueLote,
    EstoqueMovimentacao,
    EstoqueEscolaHistorico,
)
from merenda.models.migration_record import MigrationRecord  # noqa: F401
