import logging
from typing import Any, Dict, Union

from pos_models import AppView
from pos_service import BillingRepository
from pos_session import ProfileHolder

logger = logging.getLogger(__name__)


class ViewCoordinator:
    """Tracks the active screen and hands each screen the data it reads."""

    def __init__(self, repository: BillingRepository, profile: ProfileHolder):
        self.repository = repository
        self.profile = profile
        self.current_view = AppView.BILLING

    @property
    def active_view(self) -> AppView:
        if not self.profile.is_authenticated:
            return AppView.AUTH
        if self.current_view is AppView.AUTH:
            return AppView.BILLING
        return self.current_view

    def switch(self, view: Union[AppView, str]) -> AppView:
        """Unknown screen names land on billing."""
        try:
            target = view if isinstance(view, AppView) else AppView(str(view).strip().lower())
        except ValueError:
            logger.warning("Unknown view %r; showing billing", view)
            target = AppView.BILLING
        self.current_view = target
        return self.active_view

    def render(self) -> Dict[str, Any]:
        view = self.active_view
        if view is AppView.AUTH:
            existing = self.profile.existing_user
            # Prefill only; the stored PIN is not handed back out
            return {"view": view.value, "existingUser": {"phone": existing.phone} if existing else None}

        payload: Dict[str, Any] = {"view": view.value, "phone": self.profile.phone}
        if view is AppView.HISTORY:
            payload["transactions"] = [txn.to_dict() for txn in self.repository.transactions]
        else:
            payload["items"] = [item.to_dict() for item in self.repository.items]
        latest = self.repository.latest_transaction
        payload["latestTransaction"] = latest.to_dict() if latest else None
        return payload
