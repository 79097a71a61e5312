import logging
from flask import Flask, request, jsonify
import command_queue
from student_store import STUDENT_STORE_PATH, StudentStore

app = Flask(__name__)
store = StudentStore(STUDENT_STORE_PATH)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@app.route('/api/checkin', methods=['GET'])
def get_checkin():
    student_id = store.get_student_id()
    return jsonify({"studentId": student_id, "checkedIn": bool(student_id)}), 200


@app.route('/api/checkin', methods=['POST'])
def checkin():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400

    try:
        student_id = store.set_student_id(data.get('studentId'))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except OSError as e:
        logger.error(f"Failed to save check-in: {e}")
        return jsonify({"error": "Failed to save check-in"}), 500

    return jsonify({"success": True, "studentId": student_id}), 200


@app.route('/api/actions/<command>', methods=['POST'])
def manual_action(command):
    if command not in command_queue.COMMANDS:
        return jsonify({"error": f"Unknown action: {command}"}), 404

    try:
        command_queue.send_command(command)
    except OSError as e:
        logger.error(f"Presence tracker unreachable for {command}: {e}")
        return jsonify({"error": "Presence tracker is not running"}), 503

    return jsonify({"success": True}), 202


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
