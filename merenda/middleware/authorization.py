from fastapi import Depends, HTTPException, status

from merenda.middleware.auth import get_current_user

STOCK_WRITERS = ("admin", "gestor", "nutricionista", "estoquista", "escola")
STOCK_SUPERVISORS = ("admin", "gestor")


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/escolas/{escola_id}/movimentacoes")
        async def create_movimentacao(
            current_user: dict = Depends(get_current_user),
            _auth: None = Depends(require_roles("estoquista", "admin")),
        ):
    """
    async def check_role(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user['role']}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role
