from eventpay.models.event import Event, TicketType
from eventpay.models.order import Order, OrderStatus
from eventpay.models.ticket import Ticket, TicketStatus

__all__ = ["Event", "TicketType", "Order", "OrderStatus", "Ticket", "TicketStatus"]
