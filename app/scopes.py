from enum import StrEnum


class BookingScope(StrEnum):
    # Client scopes
    READ = "bookings:read"  # view own bookings, notifications and conversations
    WRITE = "bookings:write"  # pay for / create a booking, send messages
    CANCEL = "bookings:cancel"  # cancel or reschedule own booking

    # Provider scopes
    MANAGE = "bookings:manage"  # accept / reject / stream / resolve reschedules

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"
    ADMIN_VOUCHERS = "admin:vouchers"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings, notifications and conversations.",
    BookingScope.WRITE: "Book a provider and message them.",
    BookingScope.CANCEL: "Cancel or reschedule your own booking.",
    BookingScope.MANAGE: "Accept, reject and run sessions for bookings made with you.",
    BookingScope.ADMIN_READ: "Read any booking regardless of owner (admin).",
    BookingScope.ADMIN_WRITE: "Change the status of any booking and retry refunds (admin).",
    BookingScope.ADMIN_VOUCHERS: "Create, list and deactivate vouchers (admin).",
}
