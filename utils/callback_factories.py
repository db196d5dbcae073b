from aiogram.filters.callback_data import CallbackData

# --- Partner order callbacks ---
class OrderCallbackData(CallbackData, prefix="order"):
    action: str
    order_id: str
