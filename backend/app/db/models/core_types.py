import enum

class ProductType(str, enum.Enum):
    square_tubes = "square-tubes"
    rectangular_tubes = "rectangular-tubes"
    round_tubes = "round-tubes"
    oval_tubes = "oval-tubes"
    custom_steel_products = "custom-steel-products"

class StockUnit(str, enum.Enum):
    tons = "tons"
    kg = "kg"
    pieces = "pieces"

class TransactionType(str, enum.Enum):
    stock_in = "in"
    stock_out = "out"
    adjustment = "adjustment"

class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

class OrderStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    dispatched = "dispatched"
    partial_dispatch = "partial-dispatch"
    completed = "completed"
    cancelled = "cancelled"

class DispatchStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    executed = "executed"
    dispatched = "dispatched"
    delivered = "delivered"
    cancelled = "cancelled"

class StockStatus(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"


# Dispatch records whose quantities have left the ledger
CONSUMED_DISPATCH_STATUSES = {
    DispatchStatus.executed,
    DispatchStatus.dispatched,
    DispatchStatus.delivered,
}

# Allowed DispatchRecord transitions (cancel handled separately)
DISPATCH_TRANSITIONS = {
    DispatchStatus.pending: {DispatchStatus.approved},
    DispatchStatus.approved: {DispatchStatus.executed},
    DispatchStatus.executed: {DispatchStatus.dispatched},
    DispatchStatus.dispatched: {DispatchStatus.delivered},
}

TERMINAL_DISPATCH_STATUSES = {DispatchStatus.delivered, DispatchStatus.cancelled}
