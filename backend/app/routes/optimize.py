"""
/optimize endpoints for converting listing images to compact WebP.
"""
import asyncio
from datetime import datetime, timezone
from flask import request, jsonify
from werkzeug.exceptions import BadRequest, Unauthorized, RequestEntityTooLarge

# Import utilities
from app.utils.artifacts import OUTPUT_MIME_TYPE, base_filename, to_data_url, webp_filename
from app.utils.batch import optimize_batch
from app.utils.exceptions import ConversionFailed, EncodeError, ImageOptimizationError
from app.utils.image_processing import SourceImage, compress_image
from app.utils.optimizer import ConversionOutcome, optimize_image, policy_from_config
from app.utils.validation import parse_quality, sanitize_string, validate_batch, validate_image


def authenticate(app):
    """Check the Bearer API key on the current request."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        raise Unauthorized('Missing or invalid Authorization header')

    api_key = auth_header.replace('Bearer ', '').strip()
    if not app.config['API_KEY'] or api_key != app.config['API_KEY']:
        raise Unauthorized('Invalid API key')


def read_source(file) -> SourceImage:
    file.seek(0)
    filename = base_filename(sanitize_string(file.filename)) or 'image'
    return SourceImage.from_bytes(file.read(), file.content_type, filename)


def outcome_item(source: SourceImage, outcome: ConversionOutcome) -> dict:
    return {
        'filename': webp_filename(source.filename),
        'mime_type': OUTPUT_MIME_TYPE,
        'size': outcome.size,
        'original_size': outcome.original_size,
        'reduction_percent': outcome.reduction_percent,
        'quality': outcome.quality,
        'width': outcome.width,
        'height': outcome.height,
        'fallback': outcome.fallback,
        'fallback_to_original': False,
        'data_url': to_data_url(outcome.data)
    }


def original_item(source: SourceImage) -> dict:
    """Item for an image the optimizer could not convert; the original is uploaded as-is."""
    return {
        'filename': source.filename,
        'mime_type': source.mime_type,
        'size': source.size,
        'original_size': source.size,
        'reduction_percent': 0.0,
        'quality': None,
        'width': None,
        'height': None,
        'fallback': False,
        'fallback_to_original': True,
        'data_url': to_data_url(source.data, source.mime_type)
    }


def size_info(item: dict, source: SourceImage) -> dict:
    return {'original': item['original_size'], 'converted': item['size'], 'name': source.filename}


def register_optimize_routes(app):
    """Register the /optimize endpoints with the Flask app."""

    @app.route('/optimize', methods=['POST'])
    def optimize():
        """
        Optimizes a single image.

        Accepts multipart/form-data with:
        - image: File (any image/* type)
        - quality: str (optional, fixed quality in (0, 1]; skips the adaptive search)

        Returns JSON with the converted image as a data URL plus size info.
        """
        start_time = datetime.now(timezone.utc)

        try:
            # 1. Authenticate request
            authenticate(app)

            # 2. Extract and validate the upload
            if 'image' not in request.files:
                raise BadRequest('Missing image file')

            image_file = request.files['image']
            is_valid, error_msg = validate_image(image_file, app.config['MAX_IMAGE_SIZE'])
            if not is_valid:
                if 'too large' in error_msg.lower():
                    raise RequestEntityTooLarge(error_msg)
                raise BadRequest(error_msg)

            quality = None
            quality_str = request.form.get('quality')
            if quality_str:
                is_valid, quality, error_msg = parse_quality(quality_str)
                if not is_valid:
                    raise BadRequest(f'Invalid quality: {error_msg}')

            source = read_source(image_file)

            # 3. Convert
            try:
                if quality is not None:
                    max_dimension = app.config['MAX_DIMENSION']
                    result = compress_image(source.data, (max_dimension, max_dimension), quality)
                    outcome = ConversionOutcome.from_result(result, source.size, attempts=1)
                else:
                    outcome = asyncio.run(optimize_image(source, policy=policy_from_config(app.config)))
                item = outcome_item(source, outcome)
            except (ConversionFailed, EncodeError) as e:
                app.logger.warning(f'Falling back to original image: {e}', extra={
                    'endpoint': '/optimize',
                    'image_name': source.filename
                })
                item = original_item(source)

            # 4. Log completion
            duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
            app.logger.info('Request completed', extra={
                'endpoint': '/optimize',
                'image_name': source.filename,
                'original_size': item['original_size'],
                'converted_size': item['size'],
                'duration_ms': duration_ms,
                'status': 'success'
            })

            return jsonify({
                'status': 'success',
                'item': item,
                'size_info': size_info(item, source)
            }), 200

        except (BadRequest, Unauthorized, RequestEntityTooLarge, ImageOptimizationError):
            # Re-raise for the registered error handlers
            raise

        except Exception as e:
            # Log and return 500 for unexpected errors
            duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
            app.logger.error(f'Request failed: {str(e)}', exc_info=True, extra={
                'endpoint': '/optimize',
                'duration_ms': duration_ms,
                'status': 'error'
            })

            return jsonify({
                'status': 'error',
                'error': str(e),
                'error_code': 'INTERNAL_ERROR'
            }), 500

    @app.route('/optimize/batch', methods=['POST'])
    def optimize_images():
        """
        Optimizes several images concurrently.

        Accepts multipart/form-data with:
        - images: File, repeated (any image/* type)

        Returns JSON with converted items (in upload order), per-image errors
        and size info. One undecodable image does not fail the others.
        """
        start_time = datetime.now(timezone.utc)

        try:
            # 1. Authenticate request
            authenticate(app)

            # 2. Extract and validate the uploads
            files = request.files.getlist('images')
            is_valid, error_msg = validate_batch(files, app.config['MAX_BATCH_SIZE'], app.config['MAX_IMAGE_SIZE'])
            if not is_valid:
                if 'too large' in error_msg.lower():
                    raise RequestEntityTooLarge(error_msg)
                raise BadRequest(error_msg)

            sources = [read_source(f) for f in files]

            # 3. Convert all images
            results = asyncio.run(optimize_batch(
                sources,
                policy=policy_from_config(app.config),
                max_concurrency=app.config['BATCH_CONCURRENCY']
            ))

            # 4. Build response
            items = []
            errors = []
            for result in results:
                if result.ok:
                    item = outcome_item(result.source, result.outcome)
                elif isinstance(result.error, ConversionFailed):
                    item = original_item(result.source)
                else:
                    errors.append({
                        'index': result.index,
                        'filename': result.source.filename,
                        'error_code': result.error.error_code,
                        'message': result.error.message
                    })
                    continue
                item['index'] = result.index
                item['size_info'] = size_info(item, result.source)
                items.append(item)

            status = 'partial' if errors else 'success'

            # 5. Log completion
            duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
            app.logger.info('Request completed', extra={
                'endpoint': '/optimize/batch',
                'items': len(sources),
                'duration_ms': duration_ms,
                'status': status
            })

            return jsonify({
                'status': status,
                'items': items,
                'errors': errors,
                'size_info': [item['size_info'] for item in items]
            }), 200

        except (BadRequest, Unauthorized, RequestEntityTooLarge):
            raise

        except Exception as e:
            duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
            app.logger.error(f'Request failed: {str(e)}', exc_info=True, extra={
                'endpoint': '/optimize/batch',
                'duration_ms': duration_ms,
                'status': 'error'
            })

            return jsonify({
                'status': 'error',
                'error': str(e),
                'error_code': 'INTERNAL_ERROR'
            }), 500
