"""
協議文件產生服務

產生存放在入住時段上的已簽署協議文件（純文字）：
協議內容、簽署人、簽署時間，以及簽名（或手動覆寫標記）。
"""
from datetime import datetime
from typing import Optional

from models import Agreement, SignatureMethod
from core.exceptions import InternalError


def render_signed_agreement(
    agreement: Agreement,
    customer_name: str,
    membership_number: Optional[str],
    signed_at: datetime,
    signature_method: SignatureMethod,
    signature_payload: str,
) -> bytes:
    """
    產生客人簽署的協議文件

    參數：
        agreement: 目前生效的 Agreement
        customer_name: 簽署人姓名
        membership_number: 會員號碼（可為 None）
        signed_at: 簽署時間（UTC）
        signature_method: DIGITAL 或 MANUAL
        signature_payload: 簽名內容或手動覆寫標記

    返回：
        UTF-8 編碼的文件內容

    異常：
        InternalError: 協議沒有內容或無法產生文件（外層 commit 會整個 rollback）
    """

    if not agreement.body_text or not agreement.body_text.strip():
        raise InternalError(f"Agreement {agreement.id} has no body text")

    if signature_method == SignatureMethod.MANUAL:
        signature_line = f"Signature: {signature_payload}"
    else:
        signature_line = f"Signature: digital ({len(signature_payload)} bytes captured)"

    lines = [
        f"{agreement.title} (version {agreement.version})",
        "",
        agreement.body_text.strip(),
        "",
        f"Signed by: {customer_name}",
        f"Membership: {membership_number or '-'}",
        f"Signed at: {signed_at.isoformat()}Z",
        signature_line,
    ]
    try:
        return "\n".join(lines).encode("utf-8")
    except UnicodeEncodeError as e:
        raise InternalError(f"Failed to render agreement: {e}")
