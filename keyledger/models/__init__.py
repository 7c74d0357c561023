from keyledger.models.access_log import AccessLogEntry
from keyledger.models.credential import Credential
from keyledger.models.payment import PaymentRecord
from keyledger.models.subscriber import Subscriber

__all__ = ["AccessLogEntry", "Credential", "PaymentRecord", "Subscriber"]
