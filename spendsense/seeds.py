"""System taxonomy: categories and their subcategories.

``seed_taxonomy`` upserts by slug, so it is safe to run on every deploy.
Each category has exactly one default subcategory (the fallback when no
keyword picks a more specific one).
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.models.category import Category, Subcategory

logger = structlog.get_logger()

CATEGORIES = {
    "food": "Food & Dining",
    "transport": "Transportation & Travel",
    "shopping": "Shopping & Retail",
    "utilities": "Bills & Utilities",
    "housing": "Rent & Housing",
    "health": "Health & Medical",
    "entertainment": "Entertainment",
    "business": "Business & Professional",
    "transfer": "Bank Transfers",
    "salary": "Salary & Income",
    "investment": "Investments",
    "emi": "EMI & Loan Payments",
    "tax": "Tax & Government",
    "other": "Uncategorized",
}

# (slug, name, description, keywords, is_default); list order is display order
SUBCATEGORIES = {
    "transfer": [
        ("transfer-self", "Self Transfer", "Own account transfers, savings to current, CC payments",
         ["self", "own account", "internal", "to self", "own transfer", "cc payment",
          "credit card payment", "hdfc cc", "icici cc", "axis cc"], False),
        ("transfer-p2p", "P2P Transfer", "Person-to-person transfers to friends/family", [], True),
        ("transfer-wallet", "Wallet Load", "Paytm, PhonePe, Amazon Pay wallet top-ups",
         ["paytm wallet", "paytm add", "phonepe wallet", "amazon pay load", "wallet load",
          "wallet topup", "gpay load", "freecharge", "mobikwik"], False),
    ],
    "food": [
        ("food-delivery", "Food Delivery", "Swiggy, Zomato, Uber Eats orders",
         ["swiggy", "zomato", "uber eats", "dunzo", "foodpanda", "box8", "faasos", "freshmenu"], False),
        ("food-dining", "Dining Out", "Restaurants, cafes, bars",
         ["restaurant", "cafe", "coffee", "starbucks", "ccd", "barista", "pub", "bar", "brewery",
          "lounge", "bistro"], True),
        ("food-groceries", "Groceries", "BigBasket, Blinkit, Zepto, local grocery",
         ["bigbasket", "blinkit", "zepto", "instamart", "grofers", "dmart", "reliance fresh",
          "more supermarket", "grocery"], False),
        ("food-snacks", "Snacks & Street Food", "Bakery, juice shops, small vendors",
         ["bakery", "sweet", "juice", "tea", "chai", "samosa", "snack"], False),
    ],
    "transport": [
        ("transport-cab", "Cab & Ride Hailing", "Uber, Ola, Rapido rides",
         ["uber", "ola", "rapido", "meru"], True),
        ("transport-fuel", "Fuel", "Petrol, diesel, CNG, EV charging",
         ["petrol", "diesel", "fuel", "hp petrol", "indian oil", "bharat petroleum", "cng",
          "ev charging"], False),
        ("transport-public", "Public Transport", "Metro, bus, trains",
         ["metro", "bus", "irctc", "railway", "train", "local"], False),
        ("transport-tolls", "Tolls & Parking", "FASTag, parking, highway tolls",
         ["fastag", "toll", "parking", "highway"], False),
        ("transport-flights", "Flights", "Air travel bookings",
         ["indigo", "spicejet", "vistara", "air india", "goair", "akasa", "makemytrip", "goibibo",
          "cleartrip", "flight", "airline"], False),
        ("transport-hotels", "Hotels & Stays", "OYO, Airbnb, hotel bookings",
         ["oyo", "airbnb", "hotel", "booking.com", "trivago", "treebo", "fabhotels", "zostel"], False),
    ],
    "utilities": [
        ("utilities-mobile", "Mobile & Internet", "Airtel, Jio, broadband, data packs",
         ["airtel", "jio", "vodafone", "vi", "bsnl", "idea", "act fibernet", "broadband", "wifi",
          "internet", "recharge", "mobile"], True),
        ("utilities-electricity", "Electricity", "Power bills, electricity payments",
         ["electricity", "bescom", "tata power", "adani electricity", "power bill", "tangedco",
          "msedcl"], False),
        ("utilities-gas", "Gas", "LPG, piped gas, cylinder booking",
         ["lpg", "indane", "hp gas", "bharat gas", "cylinder", "piped gas"], False),
        ("utilities-water", "Water", "Water bills, tanker payments",
         ["water bill", "municipal water", "tanker"], False),
        ("utilities-subscriptions", "Subscriptions", "Netflix, Spotify, Amazon Prime, streaming",
         ["netflix", "spotify", "amazon prime", "hotstar", "disney", "youtube premium",
          "apple music", "zee5", "sonyliv", "subscription"], False),
    ],
    "shopping": [
        ("shopping-online", "Online Shopping", "Amazon, Flipkart, Myntra",
         ["amazon", "flipkart", "myntra", "ajio", "nykaa", "meesho", "snapdeal", "tatacliq"], True),
        ("shopping-offline", "Offline Retail", "Mall, clothing store, electronics",
         ["mall", "store", "reliance digital", "croma", "vijay sales", "shoppers stop", "lifestyle",
          "westside", "pantaloons"], False),
        ("shopping-pharmacy", "Pharmacy", "Apollo, MedPlus, online medicines",
         ["apollo", "medplus", "netmeds", "pharmeasy", "1mg", "tata 1mg", "chemist", "pharmacy"], False),
    ],
    "health": [
        ("health-doctor", "Doctor & Clinic", "Consultations, OPD visits",
         ["doctor", "clinic", "hospital", "consultation", "opd", "practo"], True),
        ("health-medicines", "Medicines", "Pharmacy purchases, prescriptions",
         ["medicine", "pharmacy", "prescription"], False),
        ("health-diagnostics", "Diagnostics", "Lab tests, scans, blood tests",
         ["lab", "diagnostic", "test", "pathology", "scan", "thyrocare", "lal path", "dr lal",
          "metropolis"], False),
        ("health-insurance", "Health Insurance", "Health insurance premiums",
         ["health insurance", "mediclaim", "star health", "max bupa", "icici lombard"], False),
    ],
    "housing": [
        ("housing-rent", "Rent", "Monthly rent payments", ["rent", "rental", "lease", "pg rent"], True),
        ("housing-maintenance", "Maintenance", "Society maintenance, repairs",
         ["maintenance", "society charges", "association", "repair", "plumber", "electrician"], False),
        ("housing-furniture", "Furniture & Appliances", "Rentomojo, Furlenco, home items",
         ["rentomojo", "furlenco", "pepperfry", "urban ladder", "ikea", "furniture", "appliance"], False),
    ],
    "salary": [
        ("salary-monthly", "Salary", "Monthly payroll, employer credits",
         ["salary", "payroll", "wages", "cms", "credited by employer"], True),
        ("salary-bonus", "Bonus & Incentives", "Performance bonus, variable pay",
         ["bonus", "incentive", "variable pay", "performance"], False),
        ("salary-investment", "Investment Income", "Dividends, interest, FD returns",
         ["dividend", "intdiv", "interest", "fd interest", "rd interest", "nsdl", "cdsl"], False),
        ("salary-refund", "Refunds", "Merchant refunds, reversals", ["refund", "reversal", "cashback"], False),
    ],
    "investment": [
        ("investment-mf", "Mutual Funds", "SIP, lumpsum MF investments",
         ["mutual fund", "sip", "mf purchase", "kuvera", "groww", "coin", "zerodha mf"], True),
        ("investment-stocks", "Stocks", "Stock purchases, trading",
         ["zerodha", "upstox", "groww stocks", "angel broking", "stock", "share", "demat"], False),
        ("investment-fixed", "Fixed Income", "FD, RD, bonds",
         ["fixed deposit", "fd opening", "rd opening", "bond"], False),
        ("investment-retirement", "Retirement", "PPF, NPS, EPF contributions",
         ["ppf", "nps", "epf", "pension", "pf"], False),
    ],
    "emi": [
        ("emi-home", "Home Loan EMI", "Housing loan payments", ["home loan", "housing loan", "mortgage"], False),
        ("emi-personal", "Personal Loan EMI", "Personal loan repayments", ["personal loan", "pl emi"], True),
        ("emi-vehicle", "Vehicle Loan EMI", "Car/bike loan payments",
         ["car loan", "vehicle loan", "auto loan", "bike loan"], False),
        ("emi-bnpl", "BNPL & Consumer Finance", "Bajaj Finserv, PayLater, Amazon Pay Later",
         ["bajaj finserv", "paylater", "amazon pay later", "simpl", "lazypay"], False),
    ],
    "tax": [
        ("tax-income", "Income Tax", "Advance tax, self-assessment",
         ["income tax", "advance tax", "self assessment", "itr", "challan"], True),
        ("tax-gst", "GST", "GST payments, TDS", ["gst", "tds", "tax deducted"], False),
        ("tax-bank-charges", "Bank Charges", "SMS, ATM, IMPS/NEFT charges",
         ["sms charge", "atm charge", "imps charge", "neft charge", "service charge", "bank fee"], False),
        ("tax-card-fees", "Card Fees", "Annual fees, late payment, interest",
         ["annual fee", "late payment fee", "interest charge", "card fee"], False),
    ],
    "entertainment": [
        ("entertainment-movies", "Movies & Events", "PVR, INOX, BookMyShow",
         ["pvr", "inox", "cinepolis", "bookmyshow", "movie", "cinema"], True),
        ("entertainment-gaming", "Gaming", "PlayStation, Xbox, Steam, mobile games",
         ["playstation", "xbox", "steam", "gaming", "game"], False),
        ("entertainment-nightlife", "Nightlife", "Pubs, bars, clubs", ["pub", "bar", "club", "lounge", "brewery"], False),
    ],
    "business": [
        ("business-client", "Client Payments", "Incoming business income", ["client payment", "invoice payment"], False),
        ("business-vendor", "Vendor Payments", "Payments to vendors/suppliers", ["vendor", "supplier", "payment"], True),
        ("business-office", "Office Expenses", "Software, hosting, tools",
         ["aws", "azure", "google cloud", "hosting", "software", "subscription"], False),
        ("business-travel", "Business Travel", "Work-related travel expenses",
         ["business travel", "official travel"], False),
    ],
    "other": [
        ("other-atm", "ATM Withdrawal", "Cash withdrawals from ATM",
         ["atm withdrawal", "atm wdl", "cash withdrawal", "nfs atm"], False),
        ("other-deposit", "Cash Deposit", "Cash deposits to account", ["cash deposit", "cdm"], False),
        ("other-uncategorized", "Uncategorized", "Transactions pending categorization", [], True),
    ],
}

# The uncategorized bucket sorts last
DISPLAY_ORDER_OVERRIDES = {"other-uncategorized": 99}


async def seed_taxonomy(db: AsyncSession) -> dict:
    """Create or update every system category and subcategory. Returns counts."""
    result = await db.execute(select(Category))
    categories = {c.slug: c for c in result.scalars().all()}
    result = await db.execute(select(Subcategory))
    subcategories = {s.slug: s for s in result.scalars().all()}

    created = updated = 0
    for order, (slug, description) in enumerate(CATEGORIES.items(), start=1):
        category = categories.get(slug)
        if category is None:
            category = Category(slug=slug)
            db.add(category)
            categories[slug] = category
            created += 1
        else:
            updated += 1
        category.name = slug.title()
        category.description = description
        category.is_system = True
        category.display_order = order
    await db.flush()

    for category_slug, definitions in SUBCATEGORIES.items():
        category = categories[category_slug]
        for order, (slug, name, description, keywords, is_default) in enumerate(definitions, start=1):
            subcategory = subcategories.get(slug)
            if subcategory is None:
                subcategory = Subcategory(slug=slug)
                db.add(subcategory)
                created += 1
            else:
                updated += 1
            subcategory.category_id = category.id
            subcategory.name = name
            subcategory.description = description
            subcategory.keywords = list(keywords)
            subcategory.is_default = is_default
            subcategory.display_order = DISPLAY_ORDER_OVERRIDES.get(slug, order)
    await db.flush()

    logger.info("taxonomy_seeded", created=created, updated=updated)
    return {"created": created, "updated": updated}
