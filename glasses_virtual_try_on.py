import base64
import logging
import os
import time

from flask import Flask, Response, jsonify, request, send_from_directory

from tryon_config import TryOnConfig
from tryon_session import SessionStatus, TryOnSession

logger = logging.getLogger(__name__)

HERE = os.path.dirname(os.path.abspath(__file__))
PAGE = "glasses_virtual_try_on.html"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def generate_stream(session, poll=0.01):
    last_ts = 0.0
    while session.status == SessionStatus.READY:
        jpeg, ts = session.latest_jpeg()
        if jpeg is None or ts == last_ts:
            time.sleep(poll)
            continue
        last_ts = ts
        yield (b'--frame\r\nContent-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')


# glasses URLs accepted over HTTP; local paths are only honoured from DEFAULT_GLASSES
REMOTE_IMAGE_PREFIXES = ("data:", "http://", "https://")


def _display_size(args, max_side=None):
    """(w, h) from request values, None when absent. Raises ValueError on junk."""
    w = args.get("w", args.get("width"))
    h = args.get("h", args.get("height"))
    if w is None and h is None:
        return None
    if w is None or h is None:
        raise ValueError("width and height must be given together")
    w, h = int(w), int(h)
    if max_side and max(w, h) > max_side:
        raise ValueError(f"width and height must not exceed {max_side}")
    return w, h


def create_app(session: TryOnSession) -> Flask:
    app = Flask(__name__, static_folder=None)
    # leave room for multipart overhead; the image itself is checked below
    app.config["MAX_CONTENT_LENGTH"] = session.config.max_texture_bytes + 64 * 1024

    @app.route("/")
    def root():
        return send_from_directory(HERE, PAGE)

    @app.route("/stream.mjpg")
    def stream_jpg():
        if session.status != SessionStatus.READY:
            return jsonify(ok=False, err="session not ready", status=session.status.value), 503
        return Response(generate_stream(session),
                        mimetype="multipart/x-mixed-replace; boundary=frame")

    @app.route("/snapshot")
    def snapshot():
        try:
            size = _display_size(request.args, session.config.max_capture_side)
        except ValueError as e:
            return jsonify(ok=False, err=str(e)), 400
        payload = session.capture(size)
        if payload is None:
            return "not ready", 503
        png = base64.b64decode(payload.partition(",")[2])
        return Response(png, headers={
            "Content-Type": "image/png",
            "Content-Disposition": f'attachment; filename="tryon_{int(time.time())}.png"'
        })

    @app.route("/api/screenshot", methods=["POST"])
    def api_screenshot():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        try:
            size = _display_size(data, session.config.max_capture_side)
        except (TypeError, ValueError) as e:
            return jsonify(ok=False, err=str(e)), 400
        payload = session.capture(size)
        if payload is None:
            return jsonify(ok=False, err="not ready"), 503
        return jsonify(ok=True, image=payload)

    @app.route("/api/glasses", methods=["POST"])
    def api_glasses():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        url = str(data.get("url") or data.get("image") or "").strip()
        if not url:
            return jsonify(ok=False, err="url is required"), 400
        if not url.startswith(REMOTE_IMAGE_PREFIXES):
            return jsonify(ok=False, err="url must be a data: or http(s) URL"), 400
        session.set_glasses_image(url)
        return jsonify(ok=True, loading=True)

    @app.route("/api/glasses/upload", methods=["POST"])
    def api_glasses_upload():
        f = request.files.get("file")
        if f is None:
            return jsonify(ok=False, err="file is required"), 400
        mimetype = f.mimetype or ""
        if not mimetype.startswith("image/"):
            return jsonify(ok=False, err="please upload an image file"), 400
        data = f.read()
        if not data:
            return jsonify(ok=False, err="empty file"), 400
        if len(data) > session.config.max_texture_bytes:
            return jsonify(ok=False, err="file too large"), 413
        uri = f"data:{mimetype};base64," + base64.b64encode(data).decode("ascii")
        session.set_glasses_image(uri)
        return jsonify(ok=True, loading=True, name=os.path.splitext(f.filename or "")[0] or "custom")

    @app.route("/api/adjustments", methods=["GET", "POST"])
    def api_adjustments():
        if request.method == "GET":
            return jsonify(ok=True, adjustments=session.adjustments.get().to_dict())
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify(ok=False, err="JSON object expected"), 400
        try:
            adj = session.set_adjustments(data)
        except ValueError as e:
            return jsonify(ok=False, err=str(e)), 400
        return jsonify(ok=True, adjustments=adj.to_dict())

    @app.route("/api/reset", methods=["POST"])
    def api_reset():
        adj = session.reset_adjustments()
        return jsonify(ok=True, adjustments=adj.to_dict())

    @app.route("/api/status")
    def api_status():
        return jsonify(session.status_snapshot())

    @app.route("/api/retry", methods=["POST"])
    def api_retry():
        ok = session.retry()
        code = 200 if ok else 503
        return jsonify(ok=ok, **session.status_snapshot()), code

    return app


def main():
    config = TryOnConfig.from_env()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format=LOG_FORMAT)

    session = TryOnSession(
        config,
        on_screenshot=lambda payload: logger.info("Screenshot captured (%d chars)", len(payload)),
    )
    logger.info("Camera %d at %dx%d, detection every %.0fms, render %.0f FPS",
                config.cam_index, config.cap_w, config.cap_h,
                config.detect_interval_ms, config.render_fps)
    if not session.start():
        logger.error("Session failed to start: %s (POST /api/retry to try again)", session.error)

    app = create_app(session)
    try:
        app.run(host=config.host, port=config.port, debug=config.debug,
                threaded=True, use_reloader=False)
    finally:
        session.close()


if __name__ == "__main__":
    main()
