from .main_routes import main_bp
from .client_routes import client_bp
from .admin_routes import admin_bp
from .dashboard_routes import dashboard_bp
from .super_admin_routes import super_admin_bp

__all__ = ["main_bp", "client_bp", "admin_bp", "dashboard_bp", "super_admin_bp"]
