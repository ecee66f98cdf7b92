from .marks import MarkTransactionResponse, WithdrawalRecord
from .treasury import GatewayTransactionStatus
from .user import User
