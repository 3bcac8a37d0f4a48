# Routers module for MainEvents API
from app.routers import payments
from app.routers import events
from app.routers import tickets
from app.routers import transfers
from app.routers import coupons
from app.routers import audit
