"""Supported payout methods and their display names."""

BANK_NAMES = {
    # Russian banks
    "sberbank": "Сбербанк",
    "tinkoff": "Тинькофф",
    "vtb": "ВТБ",
    "alfa": "Альфабанк",
    "gazprombank": "Газпромбанк",
    "interbank": "Межбанк",
    "mts_bank": "МТС-Банк",
    "ozon_bank": "Озонбанк",
    "open": "Открытие",
    "post_bank": "Почта банк",
    "psb": "Промсвязьбанк",
    "raiffeisen": "Райффайзен",
    "rosbank": "Росбанк",
    "rstb": "Россельхозбанк",
    "sbp": "СБП",
    "sovkom": "Совкомбанк",
    "uralsib": "Уралсиб",
    # International systems
    "account_number": "Номер счета",
    "humo_uzs": "Humo UZS",
    "ziraat": "Ziraat Bank",
    "papara": "Papara",
    "uz_card": "UZ Card",
    "kapital": "Kapital Bank",
    "garanti": "Garanti",
    "enpara": "Enpara",
    "kuveyt": "Kuveyt",
    "ininal": "Ininal",
    "iban": "iBan",
}

SUPPORTED_METHODS = frozenset(BANK_NAMES)


def is_supported_method(method: str) -> bool:
    return bool(method) and method.lower() in SUPPORTED_METHODS


def get_bank_name(method: str) -> str:
    return BANK_NAMES.get(method.lower(), method)
