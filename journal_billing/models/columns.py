from sqlalchemy.dialects.postgresql import JSONB
from journal_billing.extensions import db

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = db.JSON().with_variant(JSONB(), "postgresql")

# Money: NUMERIC(12,2) in the row's currency
Money = db.Numeric(12, 2)
