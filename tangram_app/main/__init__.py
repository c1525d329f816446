from flask import Blueprint

main_bp = Blueprint('main', __name__)

from tangram_app.main import routes
