"""Route modules for the ShopPulse API."""
