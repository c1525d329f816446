import logging
import os
from pathlib import Path

from flask import Flask

from tangram_app.main.tangram_pipeline import PipelineConfig, TangramPipeline

BASE_DIR = Path(__file__).resolve().parent


def create_app(config=None, pipeline_config: PipelineConfig = None):
    """Flask application factory.

    Args:
        config: Optional mapping merged into app.config
                (TANGRAM_MODELS_PATH, TANGRAM_ASSETS_DIR, OUTPUT_FOLDER)
        pipeline_config: Optional PipelineConfig for the pose pipeline
    """
    app = Flask(__name__)
    app.config.update(
        TANGRAM_MODELS_PATH=None,
        TANGRAM_ASSETS_DIR=None,
        OUTPUT_FOLDER=str(BASE_DIR / 'static' / 'output'),
    )
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config.get('LOG_LEVEL', logging.INFO))

    os.makedirs(app.config['OUTPUT_FOLDER'], exist_ok=True)

    # One pipeline per application: it carries tracker state across frames
    app.extensions['tangram_pipeline'] = TangramPipeline(
        models_path=app.config['TANGRAM_MODELS_PATH'],
        assets_dir=app.config['TANGRAM_ASSETS_DIR'],
        config=pipeline_config,
    )

    # Register blueprints
    from tangram_app.main import main_bp
    app.register_blueprint(main_bp)

    return app
