from flask import Flask, request, jsonify
from flask_cors import CORS
import json
import logging

from ocr_matcher import build_text_extractor, match_text
from register_scanner import scan_register, summarize_detections
from roster import RosterEntry
from scan_config import load_settings
from scan_errors import EmptyRosterError, ImageDecodeError, NoImageSuppliedError

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

settings = load_settings()

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = int(settings.max_upload_mb * 1024 * 1024)
CORS(app)


def parse_roster(raw):
    """Roster from a JSON string or an already decoded list of {id, name, group}."""
    if raw is None or raw == '':
        return []
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, list):
        raise ValueError('roster must be a JSON list of {id, name, group}')
    return [RosterEntry.from_dict(d) for d in data if isinstance(d, dict)]


def error_response(message, status):
    return jsonify({'success': False, 'error': message}), status


@app.route('/api/detect-ticks', methods=['POST'])
def detect_ticks():
    try:
        file = request.files.get('file')
        image = file.read() if file is not None else None

        roster = parse_roster(request.form.get('roster'))
        group = request.form.get('group') or None
        sensitivity = float(request.form.get('sensitivity', settings.sensitivity))
        provider = request.form.get('ocr', settings.ocr_provider)

        extractor = build_text_extractor(provider, tesseract_cmd=settings.tesseract_cmd,
                                         gemini_api_key=settings.gemini_api_key,
                                         gemini_model=settings.gemini_model)
        result = scan_register(image, roster, group=group, sensitivity=sensitivity, extractor=extractor)
        summary = summarize_detections(result.detections, settings.review_confidence_floor)
        print(f"✅ Scanned register: {summary['present']}/{summary['total']} present")

        return jsonify({
            'success': True,
            'group': group,
            'sensitivity': sensitivity,
            'summary': summary,
            **result.to_dict(),
        })

    except NoImageSuppliedError as e:
        return error_response(str(e), 400)
    except ImageDecodeError as e:
        return error_response(str(e), 415)
    except (EmptyRosterError, ValueError) as e:
        return error_response(str(e), 422)
    except Exception as e:
        print(f"❌ Processing error: {e}")
        logging.getLogger(__name__).exception("tick detection failed")
        return error_response(str(e), 500)


@app.route('/api/match-text', methods=['POST'])
def match_ocr_text():
    payload = request.get_json(silent=True) or {}
    try:
        roster = parse_roster(payload.get('roster'))
    except ValueError as e:
        return error_response(str(e), 422)
    text = payload.get('text', '')
    if text is None:
        text = ''
    if not isinstance(text, str):
        return error_response('text must be a string', 422)
    matches = match_text(text, roster)
    return jsonify({
        'success': True,
        'matches': [m.to_dict() for m in matches],
        'matched': sum(1 for m in matches if m.matched_person),
    })


@app.route('/api/health', methods=['GET'])
def health_check():
    return jsonify({'status': 'ok', 'message': 'API is running'})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
