from enum import StrEnum


class NoShowScope(StrEnum):
    # Staff scopes
    READ = "no_show:read"  # view review candidates and charge records
    CHARGE = "no_show:charge"  # charge a single booking by hand

    # Admin scopes
    ADMIN = "admin:no_show"


NO_SHOW_SCOPE_DESCRIPTIONS: dict[str, str] = {
    NoShowScope.READ: "View no-show review candidates and recorded charges.",
    NoShowScope.CHARGE: "Charge the no-show fee for a single booking.",
    NoShowScope.ADMIN: "Full access to no-show billing (admin).",
}
