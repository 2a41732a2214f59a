"""客户账户状态查询。

根据存储中的账户目录判断账户状态，供确定性路径丰富上下文：
not_found / not_pro / active / inactive / pro_pending / unknown。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

SUPPORT_CONTACT = "contact@vadf.fr"
ACCOUNT_INTENTS = frozenset({"activation_compte", "mot_de_passe_oublie"})


class AccountLookup(Protocol):
    def find_account(self, email: Optional[str] = None, account_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        ...


@dataclass(frozen=True)
class AccountStatus:
    status: str
    message: str
    can_reset_password: bool = False
    redirect_to_signup: bool = False
    escalade: bool = False
    contact: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def as_context(self) -> Dict[str, Any]:
        return {
            "statut_compte": self.status,
            "compte_actif": self.is_active,
            "reset_possible": self.can_reset_password,
        }


def _is_pro(account: Dict[str, Any]) -> bool:
    scope = account.get("scope") or ""
    return account.get("accountOwner") is True or "B2B" in scope


def check_customer_account(
    lookup: AccountLookup,
    email: Optional[str] = None,
    account_name: Optional[str] = None,
) -> AccountStatus:
    account = None
    if email:
        account = lookup.find_account(email=email)
    elif account_name:
        account = lookup.find_account(account_name=account_name)

    if not account:
        return AccountStatus(
            status="not_found",
            message="Compte introuvable. Vous pouvez créer un compte professionnel depuis la page d'inscription.",
            redirect_to_signup=True,
        )
    if not _is_pro(account):
        return AccountStatus(
            status="not_pro",
            message="VADF travaille exclusivement avec les professionnels. Créez un compte entreprise pour accéder à nos services.",
            escalade=True,
            contact=SUPPORT_CONTACT,
        )
    if account.get("emailVerified") is True or account.get("isOnline") is True:
        return AccountStatus(
            status="active",
            message="Compte actif. Vous pouvez demander une réinitialisation du mot de passe si besoin.",
            can_reset_password=True,
        )
    if account.get("emailVerified") is False or account.get("isOnline") is False:
        return AccountStatus(
            status="inactive",
            message="Votre compte est enregistré mais non activé. Veuillez contacter l'adresse web@vadf.fr afin de renvoyer manuellement l'email d'activation.",
        )
    if account.get("accountOwner") is True:
        return AccountStatus(
            status="pro_pending",
            message=f"Veuillez contacter l'adresse {SUPPORT_CONTACT} afin de relancer la demande relative à l'ouverture d'un compte professionnel.",
        )
    return AccountStatus(status="unknown", message=f"Statut du compte inconnu. Contactez {SUPPORT_CONTACT}.")
