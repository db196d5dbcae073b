# This file makes the 'handlers' directory a Python package.
from aiogram import Router


def setup_routers():
    """
    Creates and configures all routers for the application.
    Routers are imported locally so that every call gets clean instances,
    which keeps tests isolated.

    Returns two routers:
    1. main_router: partner commands, order buttons and live location.
    2. error_router: error handling and the catch-all fallbacks, registered last.
    """
    from . import partner_actions, error_handler

    main_router = Router()
    main_router.include_routers(
        partner_actions.router,
    )
    return main_router, error_handler.router
