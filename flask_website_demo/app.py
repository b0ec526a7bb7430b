from flask import Flask, jsonify, request
import io
import logging
import sys
from pathlib import Path

import cv2
import numpy as np

# --- Project Path Fix ---
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.append(str(PROJECT_ROOT))

# --- Model Imports ---
import posenet
from scripts.recognize_audio import recognize_clip
from speech_commands import BrowserFftSpeechCommandRecognizer, create

logger = logging.getLogger(__name__)


def _decode_image(data: bytes) -> np.ndarray:
    frame = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError("Could not decode the uploaded image")
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def create_app(
    recognizer: BrowserFftSpeechCommandRecognizer | None = None,
    pose_net: posenet.PoseNet | None = None,
) -> Flask:
    app = Flask(__name__)
    models = {"recognizer": recognizer, "pose_net": pose_net}

    def get_recognizer() -> BrowserFftSpeechCommandRecognizer:
        if models["recognizer"] is None:
            models["recognizer"] = create("BROWSER_FFT")
        models["recognizer"].ensure_model_loaded()
        return models["recognizer"]

    def get_pose_net() -> posenet.PoseNet:
        if models["pose_net"] is None:
            models["pose_net"] = posenet.load()
        return models["pose_net"]

    # -------------------------------------------------------
    # ----------------------- ROUTES ------------------------
    # -------------------------------------------------------

    @app.route("/", methods=["GET"])
    def index():
        """Lists the endpoints"""
        return jsonify({"endpoints": ["/speech", "/pose"]})

    @app.route("/speech", methods=["POST"])
    def speech():
        """Recognize the word spoken in an uploaded clip"""
        file = request.files.get("audio_file")
        if not file or file.filename == "":
            return jsonify({"error": "Please upload an audio file."}), 400

        try:
            recognizer = get_recognizer()
        except FileNotFoundError as e:
            logger.warning("Speech-command model not found: %s", e)
            return jsonify({"error": "Speech recognition unavailable."}), 503

        k = request.form.get("k", default=3, type=int)
        try:
            results = recognize_clip(recognizer, io.BytesIO(file.read()), k=k)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"results": results, "top_word": results[0]["word"] if results else None})

    @app.route("/pose", methods=["POST"])
    def pose():
        """Estimate one or more poses in an uploaded image"""
        file = request.files.get("image_file")
        if not file or file.filename == "":
            return jsonify({"error": "Please upload an image file."}), 400

        multi = request.form.get("multi", default="false").lower() in ("1", "true", "yes")
        output_stride = request.form.get("output_stride", default=16, type=int)
        image_scale_factor = request.form.get("image_scale_factor", default=0.5, type=float)
        try:
            net = get_pose_net()
        except FileNotFoundError as e:
            logger.warning("PoseNet checkpoint not found: %s", e)
            return jsonify({"error": "Pose estimation unavailable."}), 503

        try:
            rgb = _decode_image(file.read())
            if multi:
                poses = net.estimate_multiple_poses(
                    rgb, image_scale_factor=image_scale_factor, output_stride=output_stride
                )
            else:
                poses = [net.estimate_single_pose(rgb, image_scale_factor=image_scale_factor, output_stride=output_stride)]
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"poses": [p.to_dict() for p in poses]})

    return app


# Flask App
app = create_app()

# Run App
if __name__ == "__main__":
    app.run(debug=True)
