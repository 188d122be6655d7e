PROVIDER_FAKE = "FAKE"
PROVIDER_MESHULAM = "MESHULAM"
PROVIDER_PELECARD = "PELECARD"
PROVIDER_TRANZILA = "TRANZILA"

PROVIDER_CHOICES = [
    (PROVIDER_FAKE, "Fake (development)"),
    (PROVIDER_MESHULAM, "Meshulam"),
    (PROVIDER_PELECARD, "Pelecard"),
    (PROVIDER_TRANZILA, "Tranzila"),
]

PROVIDERS = [code for code, _ in PROVIDER_CHOICES]

FEATURE_HOSTED_PAGE = 1
FEATURE_TOKENIZATION = 2
FEATURE_RECURRING = 4
FEATURE_REFUNDS = 8
FEATURE_WEBHOOKS = 16

FEATURE_CHOICES = [
    (FEATURE_HOSTED_PAGE, "Hosted payment page"),
    (FEATURE_TOKENIZATION, "Tokenization"),
    (FEATURE_RECURRING, "Recurring charges"),
    (FEATURE_REFUNDS, "Refunds"),
    (FEATURE_WEBHOOKS, "Webhooks"),
]

ALL_FEATURES = (
    FEATURE_HOSTED_PAGE
    | FEATURE_TOKENIZATION
    | FEATURE_RECURRING
    | FEATURE_REFUNDS
    | FEATURE_WEBHOOKS
)


def feature_names(mask: int) -> list:
    return [label for flag, label in FEATURE_CHOICES if mask & flag]
