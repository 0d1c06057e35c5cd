"""
Checkout Service — エラー分類

  ValidationFailed         入力エラー (フィールド単位、ユーザーが修正)
  SlotRequired             スロット未選択
  SlotExpiredError         スロット期限切れ (再選択を強制、代替スロットは選ばない)
  PromoRejected            プロモコードが無効
  WalletLimitExceeded      ウォレット上限超過 (1 回だけ自動再送)
  ReconciliationFailed     再送後も拒否された (ハード失敗)
  OrderRejected            注文サービスによる拒否
  OrderServiceUnavailable  ネットワーク/サーバ障害 (自動再送しない)
  SubmissionInProgress     二重送信

保存データの不整合はエラーにしない。読み込み時に黙って除去する。
"""

from decimal import Decimal


class CheckoutError(Exception):
    code = "checkout_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(CheckoutError):
    code = "validation_failed"

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors


class SlotRequired(CheckoutError):
    code = "slot_required"

    def __init__(self) -> None:
        super().__init__(
            "Please select a delivery date and time slot to place your order."
        )


class SlotExpiredError(CheckoutError):
    code = "slot_expired"

    def __init__(
        self, message: str = "Your delivery slot has expired. Please select a new slot."
    ) -> None:
        super().__init__(message)


class PromoRejected(CheckoutError):
    code = "promo_rejected"


class WalletLimitExceeded(CheckoutError):
    code = "wallet_limit_exceeded"

    def __init__(self, message: str, authority_maximum: Decimal) -> None:
        super().__init__(message)
        self.authority_maximum = authority_maximum


class ReconciliationFailed(CheckoutError):
    code = "reconciliation_failed"


class OrderRejected(CheckoutError):
    code = "order_rejected"


class OrderServiceUnavailable(CheckoutError):
    code = "order_service_unavailable"


class SubmissionInProgress(CheckoutError):
    code = "submission_in_progress"

    def __init__(self) -> None:
        super().__init__("An order submission is already in progress.")
