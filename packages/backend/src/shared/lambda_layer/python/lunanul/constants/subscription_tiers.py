"""
Centralized subscription tier configuration constants.

Every tier, price, feature limit, spread and guide unlock lives here so that
call sites never branch on a tier themselves. The tables are loaded into a
validated TierCatalog by lunanul.services.tier_catalog.
"""

# Tier ordering, lowest first
TIER_ORDER = ["seeker", "mystic", "oracle"]

# Seeker Tier Configuration
SEEKER_MONTHLY_READINGS = 3
SEEKER_MANUAL_INTERPRETATIONS = 5
SEEKER_JOURNAL_ENTRIES = 3
SEEKER_PRICE = "Free"
SEEKER_DESCRIPTION = "Essential daily tarot experience"

# Mystic Tier Configuration
MYSTIC_PRICE = "$4.99/month"
MYSTIC_PRICE_USD = 4.99
MYSTIC_YEARLY_PRICE_USD = 49.99
MYSTIC_DESCRIPTION = "Complete tarot experience without limits"

# Oracle Tier Configuration
ORACLE_PRICE = "$9.99/month"
ORACLE_PRICE_USD = 9.99
ORACLE_YEARLY_PRICE_USD = 99.99
ORACLE_DESCRIPTION = "Premium features and advanced capabilities"

# Pricing Configuration
CURRENCY = "USD"
CURRENCY_SYMBOL = "$"
YEARLY_DISCOUNT_PERCENTAGE = 17

# Suggestion thresholds
APPROACHING_LIMIT_RATIO = 0.8
PROMPT_COOLDOWN_HOURS = 24
USAGE_HISTORY_PERIODS = 12

TIERS = {
    "seeker": {
        "display_name": "Seeker",
        "price": SEEKER_PRICE,
        "description": SEEKER_DESCRIPTION,
    },
    "mystic": {
        "display_name": "Mystic",
        "price": MYSTIC_PRICE,
        "description": MYSTIC_DESCRIPTION,
    },
    "oracle": {
        "display_name": "Oracle",
        "price": ORACLE_PRICE,
        "description": ORACLE_DESCRIPTION,
    },
}

# A limit of None means unlimited. Tiers absent from "limits" are uncapped.
FEATURES = {
    "readings": {
        "display_name": "Monthly Readings",
        "description": "Full tarot readings with AI interpretation",
        "required_tier": "seeker",
        "limits": {"seeker": SEEKER_MONTHLY_READINGS, "mystic": None, "oracle": None},
    },
    "manual_interpretations": {
        "display_name": "Manual Interpretations",
        "description": "Interpret cards you pulled from your own deck",
        "required_tier": "seeker",
        "limits": {"seeker": SEEKER_MANUAL_INTERPRETATIONS, "mystic": None, "oracle": None},
    },
    "journal_entries": {
        "display_name": "Journal Saves",
        "description": "Save readings to your journal",
        "required_tier": "seeker",
        "limits": {"seeker": SEEKER_JOURNAL_ENTRIES, "mystic": None, "oracle": None},
    },
    "daily_card": {
        "display_name": "Daily Card",
        "description": "Card of the day with a short interpretation",
        "required_tier": "seeker",
    },
    "ai_readings": {
        "display_name": "AI Interpretations",
        "description": "AI-generated interpretations for every reading",
        "required_tier": "seeker",
    },
    "ad_free": {
        "display_name": "Ad-Free Experience",
        "description": "Enjoy Lunanul without interruptions",
        "required_tier": "mystic",
    },
    "audio_reading": {
        "display_name": "Audio Readings",
        "description": "Listen to your readings narrated",
        "required_tier": "oracle",
    },
    "customization": {
        "display_name": "Customization",
        "description": "Personalize themes and card backs",
        "required_tier": "oracle",
    },
    "early_access": {
        "display_name": "Early Access",
        "description": "Try new features before everyone else",
        "required_tier": "oracle",
    },
    "advanced_spreads": {
        "display_name": "Advanced Spreads",
        "description": "Extended spread layouts for deep readings",
        "required_tier": "oracle",
    },
    "personalized_prompts": {
        "display_name": "Personalized Prompts",
        "description": "Journal prompts tailored to your readings",
        "required_tier": "oracle",
    },
}

SPREADS = {
    "single_card": {"display_name": "Single Card", "card_count": 1, "required_tier": "seeker"},
    "three_card": {"display_name": "Past, Present, Future", "card_count": 3, "required_tier": "seeker"},
    "celtic_cross": {"display_name": "Celtic Cross", "card_count": 10, "required_tier": "mystic"},
    "horseshoe": {"display_name": "Horseshoe", "card_count": 7, "required_tier": "mystic"},
    "relationship": {"display_name": "Relationship", "card_count": 5, "required_tier": "mystic"},
    "career": {"display_name": "Career Path", "card_count": 7, "required_tier": "mystic"},
}

# Legacy spread keys still sent by older clients
SPREAD_ALIASES = {
    "celtic": "celtic_cross",
}

GUIDES = {
    "sage": {"display_name": "Zian, The Wise Mystic", "required_tier": "mystic"},
    "healer": {"display_name": "Lyra, The Compassionate Healer", "required_tier": "seeker"},
    "mentor": {"display_name": "Kael, The Practical Strategist", "required_tier": "seeker"},
    "visionary": {"display_name": "Elara, The Creative Muse", "required_tier": "mystic"},
}

# Purchasable products, keyed by product id
PRODUCTS = {
    "mystic_monthly": {
        "tier": "mystic",
        "title": "Mystic Monthly",
        "description": "Complete tarot experience, billed monthly",
        "price": MYSTIC_PRICE_USD,
        "period": "monthly",
        "platform_product_id": "com.lunanul.mystic.monthly",
        "is_popular": True,
    },
    "mystic_yearly": {
        "tier": "mystic",
        "title": "Mystic Yearly",
        "description": "Complete tarot experience, billed yearly",
        "price": MYSTIC_YEARLY_PRICE_USD,
        "period": "yearly",
        "platform_product_id": "com.lunanul.mystic.yearly",
        "original_price": round(MYSTIC_PRICE_USD * 12, 2),
        "discount_percentage": YEARLY_DISCOUNT_PERCENTAGE,
    },
    "oracle_monthly": {
        "tier": "oracle",
        "title": "Oracle Monthly",
        "description": "Premium features, billed monthly",
        "price": ORACLE_PRICE_USD,
        "period": "monthly",
        "platform_product_id": "com.lunanul.oracle.monthly",
    },
    "oracle_yearly": {
        "tier": "oracle",
        "title": "Oracle Yearly",
        "description": "Premium features, billed yearly",
        "price": ORACLE_YEARLY_PRICE_USD,
        "period": "yearly",
        "platform_product_id": "com.lunanul.oracle.yearly",
        "original_price": round(ORACLE_PRICE_USD * 12, 2),
        "discount_percentage": YEARLY_DISCOUNT_PERCENTAGE,
    },
}
