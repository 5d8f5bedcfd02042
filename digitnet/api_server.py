"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training digit
classifiers.

This module provides endpoints for:
- Creating and managing in-memory networks
- Training networks online with real-time progress updates via WebSockets
- Classifying feature vectors and browsing test-set examples

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks

Networks live only in memory; nothing is written to disk.
"""

import os
import sys
import math
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet.dataset import Dataset, DatasetFormatError, load_npz
from digitnet.log_config import configure_logging
from digitnet.network import Network

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

DATA_PATH = os.getenv('DIGITNET_DATA_PATH', 'data/mnist.npz')
DEFAULT_LAYER_SIZES = [784, 200, 10]

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Digit datasets - loaded once at startup
training_data: Optional[Dataset] = None
validation_data: Optional[Dataset] = None
test_data: Optional[Dataset] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_digit_data(path: str = DATA_PATH) -> bool:
    """
    Load the digit archive into the module-level datasets.

    Returns:
        bool: True if the data was loaded, False if it is unavailable
    """
    global training_data, validation_data, test_data

    try:
        training_data, validation_data, test_data = load_npz(path)
    except FileNotFoundError:
        logger.warning(
            f"Digit data not found at {path}; training endpoints disabled"
        )
        return False
    except DatasetFormatError as e:
        logger.error(f"Invalid digit data at {path}: {e}")
        return False
    return True


load_digit_data()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Seconds between sweeps of finished training jobs
JOB_CLEANUP_INTERVAL = int(os.getenv('DIGITNET_JOB_CLEANUP_INTERVAL', 3600))

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_finished_training_jobs() -> int:
    """
    Remove completed or failed training jobs from memory.

    This prevents the training_jobs dictionary from growing indefinitely.
    Only removes jobs that are no longer active (completed or failed).

    Returns:
        int: Number of jobs removed
    """
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")
    return len(jobs_to_remove)


def cleanup_training_jobs_task() -> None:
    """
    Background task that sweeps finished training jobs every
    JOB_CLEANUP_INTERVAL seconds.

    No jobs survive a restart, so the first sweep waits a full interval.
    """
    while True:
        gevent.sleep(JOB_CLEANUP_INTERVAL)
        try:
            cleanup_finished_training_jobs()
        except Exception as e:
            logger.exception(f"Error during training job cleanup: {e}")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Uses gevent.spawn() directly so it works both when running directly
    and under gunicorn. Calling it more than once has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info(
        f"Starting training job cleanup (every {JOB_CLEANUP_INTERVAL}s)"
    )
    gevent.spawn(cleanup_training_jobs_task)


start_cleanup_task()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def is_positive_int(value: Any) -> bool:
    """True for a positive integer; JSON booleans do not count."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def is_finite_number(value: Any) -> bool:
    """True for an int or float that is neither a boolean, NaN nor infinite."""
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image_data: Feature vector; square vectors are drawn as an image,
            anything else as a single row
        predicted: The class the network predicted
        actual: The correct class

    Returns:
        Base64-encoded PNG image string
    """
    side = int(np.sqrt(image_data.size))
    if side * side == image_data.size:
        pixels = image_data.reshape(side, side)
    else:
        pixels = image_data.reshape(1, -1)

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def network_summary(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready description of an in-memory network."""
    net = info['network']
    return {
        'network_id': network_id,
        'architecture': net.sizes,
        'learning_rate': net.learning_rate,
        'trained': info['trained'],
        'training': info['training'],
        'accuracy': info['accuracy'],
        'accuracy_history': info['accuracy_history']
    }


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Returns counts of active networks and training jobs that are
    currently in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'data_loaded': training_data is not None,
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body (optional):
        {'layer_sizes': [784, 200, 10], 'learning_rate': 1.0, 'seed': 1}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
    learning_rate = data.get('learning_rate', 1.0)
    seed = data.get('seed')

    # Exactly input, hidden and output layers
    if (not isinstance(layer_sizes, list) or len(layer_sizes) != 3
            or not all(is_positive_int(n) for n in layer_sizes)):
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return jsonify({
            'error': 'Invalid architecture. Must be [inputs, hidden, outputs] '
                     'with positive integers.'
        }), 400
    if not is_finite_number(learning_rate) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive finite number'}), 400
    if seed is not None and (not isinstance(seed, int) or isinstance(seed, bool)):
        return jsonify({'error': 'seed must be an integer'}), 400

    network_id = str(uuid.uuid4())
    net = Network(*layer_sizes, learning_rate=learning_rate, seed=seed)

    active_networks[network_id] = {
        'network': net,
        'trained': False,
        'training': False,
        'accuracy': None,
        'accuracy_history': []
    }

    logger.info(f"Created network {network_id} with architecture {layer_sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'learning_rate': net.learning_rate,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all networks held in memory."""
    networks = [
        network_summary(nid, info) for nid, info in active_networks.items()
    ]
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404
    return jsonify(network_summary(network_id, active_networks[network_id])), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network(network_id: str):
    """Delete a network from memory."""
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404
    if info['training']:
        return jsonify({'error': 'Network is currently training'}), 409

    del active_networks[network_id]
    logger.info(f"Deleted network {network_id}")
    return jsonify({'network_id': network_id, 'deleted': True}), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (optional):
        {'epochs': 10}

    Returns:
        JSON with job_id, network_id, and status
    """
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if training_data is None or test_data is None:
        return jsonify({'error': 'Training data not available'}), 503

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 10)

    if not is_positive_int(epochs):
        return jsonify({'error': 'epochs must be a positive integer'}), 400

    net = info['network']
    if (net.input_count != training_data.feature_count
            or net.output_count != training_data.class_count):
        return jsonify({
            'error': f'Network {net.sizes} does not match data with '
                     f'{training_data.feature_count} features and '
                     f'{training_data.class_count} classes'
        }), 400

    if info['training']:
        return jsonify({'error': 'Network is already training'}), 409

    job_id = str(uuid.uuid4())
    info['training'] = True
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, lr={net.learning_rate}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task, network_id, job_id, epochs
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(network_id: str, job_id: str, epochs: int) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket after every epoch.
    """
    info = active_networks[network_id]
    net = info['network']
    job = training_jobs[job_id]

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        job['status'] = 'training'
        job['progress'] = progress
        info['accuracy_history'].append(data['accuracy'])

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data['accuracy'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data['correct'],
            'total': data['total']
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    def yield_to_other_tasks() -> None:
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        accuracies = net.train_on_dataset(
            training_data,
            test_data,
            epochs,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks
        )
        accuracy = accuracies[-1]

        info['trained'] = True
        info['accuracy'] = accuracy

        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })

    finally:
        info['training'] = False
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404
    return jsonify(training_jobs[job_id]), 200


@app.route('/api/networks/<network_id>/classify', methods=['POST'])
def classify_features(network_id: str):
    """
    Classify a single feature vector.

    Request body:
        {'features': [0.0, 0.5, ...]}  # exactly input_count values
    """
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    net = info['network']
    data = request.get_json(silent=True) or {}
    features = data.get('features')

    if (not isinstance(features, list) or len(features) != net.input_count
            or not all(is_finite_number(v) for v in features)):
        return jsonify({
            'error': f'features must be a list of {net.input_count} numbers'
        }), 400

    predicted = net.classify(features)
    return jsonify({
        'network_id': network_id,
        'predicted_class': predicted,
        'network_output': array_to_float_list(net.output_activations)
    }), 200


# ============================================================================
# EXAMPLE ENDPOINTS
# ============================================================================

def find_example(network_id: str, successful: bool, max_attempts: int):
    """
    Return a random test example the network classifies correctly
    (``successful``) or incorrectly, as a Flask response.
    """
    kind = 'successful' if successful else 'unsuccessful'
    if network_id not in active_networks:
        logger.warning(f"{kind.capitalize()} example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if test_data is None or len(test_data) == 0:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    net = active_networks[network_id]['network']
    if net.input_count != test_data.feature_count:
        return jsonify({'error': 'Network does not match test data'}), 400

    for attempt in range(max_attempts):
        index = np.random.randint(0, len(test_data))
        x, y = test_data[index]

        predicted = net.classify(x)
        actual = Network.target_classification(y)

        if (predicted == actual) == successful:
            logger.debug(f"Found {kind} example on attempt {attempt + 1}")

            return jsonify({
                'network_id': network_id,
                'example_index': int(index),
                'predicted_digit': predicted,
                'actual_digit': actual,
                'image_data': create_digit_image(x, predicted, actual),
                'output_weights': net.second_weights.values.tolist(),
                'network_output': array_to_float_list(net.output_activations)
            }), 200

    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Find and return a random example the network predicts correctly."""
    return find_example(network_id, successful=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Find and return a random example the network predicts incorrectly."""
    return find_example(network_id, successful=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
